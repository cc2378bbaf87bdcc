# =============================================================================
# Hawk-Sync Entry Point for `python -m hawk_sync`
# =============================================================================
# Equivalent to running the 'hawk-sync' command after installation.
# =============================================================================

import sys

from hawk_sync.app import main

if __name__ == "__main__":
    sys.exit(main())
