# =============================================================================
# mailpull Entry Point for `python -m mailpull`
# =============================================================================
# Equivalent to running the 'mailpull' command after installation.
# =============================================================================

import sys

from mailpull.app import main

if __name__ == "__main__":
    sys.exit(main())
