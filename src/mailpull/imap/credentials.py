# =============================================================================
# Credential Resolution
# =============================================================================
# A domain logs in with one of two kinds of credentials:
#
#   - SharedCredentials:   username/password stored with the IMAP config
#   - PersonalCredentials: a personal account whose password is stored
#                          AES-GCM encrypted and may be administratively
#                          disabled
#
# Credentials are resolved once per connect attempt. Any failure here
# (missing account, disabled account, undecryptable password) raises
# CredentialError, which the worker treats exactly like a rejected login.
# =============================================================================

from dataclasses import dataclass
from typing import Callable

from mailpull.core import (
    Domain,
    EncryptedSecret,
    PersonalAccountStatus,
    SecretBox,
    SecretError,
)


class CredentialError(Exception):
    """Raised when a domain's credentials cannot be used. Always fatal."""
    pass


@dataclass(frozen=True)
class LoginCredentials:
    """Plaintext username/password ready for LOGIN."""
    username: str
    password: str

    def __repr__(self) -> str:
        return f"LoginCredentials(username={self.username!r})"


@dataclass(frozen=True)
class SharedCredentials:
    """Credentials shared by everyone using the domain."""
    username: str
    password: str

    def __repr__(self) -> str:
        return f"SharedCredentials(username={self.username!r})"


@dataclass(frozen=True)
class PersonalCredentials:
    """A personal account with an encrypted password."""
    username: str
    encrypted: EncryptedSecret
    status: PersonalAccountStatus = PersonalAccountStatus.ACTIVE


Credentials = SharedCredentials | PersonalCredentials

SecretBoxFactory = Callable[[], SecretBox]


def credentials_for(domain: Domain) -> Credentials:
    """
    Pick the credential variant for a domain.

    Raises:
        CredentialError: If a personal domain has no personal account.
    """
    if not domain.is_personal:
        return SharedCredentials(
            username=domain.imap.username,
            password=domain.imap.password,
        )

    account = domain.personal_account
    if account is None:
        raise CredentialError(f"Personal IMAP account not found for domain {domain.name}")

    return PersonalCredentials(
        username=account.username,
        encrypted=EncryptedSecret(
            ciphertext=account.password_ciphertext,
            iv=account.password_iv,
            tag=account.password_tag,
        ),
        status=account.status,
    )


def resolve_credentials(
    credentials: Credentials,
    secret_box_factory: SecretBoxFactory = SecretBox.from_environment,
) -> LoginCredentials:
    """
    Turn a credential variant into plaintext login credentials.

    The secret box is only built for personal credentials, so shared
    domains work without an encryption key configured.

    Raises:
        CredentialError: If the account is disabled or the password
                         cannot be decrypted.
    """
    if isinstance(credentials, SharedCredentials):
        return LoginCredentials(credentials.username, credentials.password)

    if credentials.status == PersonalAccountStatus.DISABLED:
        raise CredentialError(f"Personal IMAP account {credentials.username} is disabled")

    try:
        password = secret_box_factory().decrypt(credentials.encrypted)
    except SecretError as e:
        raise CredentialError(
            f"Cannot decrypt password for {credentials.username}: {e}"
        ) from e

    return LoginCredentials(credentials.username, password)
