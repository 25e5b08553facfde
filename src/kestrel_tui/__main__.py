# =============================================================================
# Kestrel-TUI Entry Point for `python -m kestrel_tui`
# =============================================================================
# Equivalent to running the 'kestrel-tui' command after installation.
# =============================================================================

import sys

from kestrel_tui.app import main

if __name__ == "__main__":
    sys.exit(main())
