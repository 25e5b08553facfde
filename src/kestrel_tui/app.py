# =============================================================================
# Kestrel-TUI Main Application
# =============================================================================
# The Textual application class and the command-line entry point.
#
# The app itself is thin: it owns the configuration, builds the Session for
# the configured Gmail account, and shows the MailScreen. Everything the
# user does goes through the Session's modal engine.
# =============================================================================

import argparse
import logging
import sys
from pathlib import Path

from textual.app import App

from kestrel_tui import __app_name__, __version__
from kestrel_tui.config import Config, ConfigError, print_paths
from kestrel_tui.logs import setup_logging
from kestrel_tui.session import Session
from kestrel_tui.ui.screens.mail import MailScreen

logger = logging.getLogger(__name__)


class KestrelApp(App):
    """
    The main Kestrel-TUI application.

    Attributes:
        config: The loaded application configuration.
        session: The running Session (set on mount).
        TITLE: Window title shown in terminal.
        CSS_PATH: Path to the Textual CSS file for styling.
    """

    # Application metadata
    TITLE = "Kestrel-TUI"
    SUB_TITLE = "Gmail"

    # Path to CSS file (relative to this module)
    CSS_PATH = Path(__file__).parent / "ui" / "styles" / "app.tcss"

    # All keys belong to the modal engine
    ENABLE_COMMAND_PALETTE = False

    def __init__(self, config: Config, *, enable_sync: bool = True) -> None:
        """
        Initialize the Kestrel-TUI application.

        Args:
            config: Validated configuration.
            enable_sync: False starts from the local cache without touching
                         the network.
        """
        super().__init__()
        self.config = config
        self.enable_sync = enable_sync
        self.session: Session | None = None

        if config.ui.theme == "light":
            self.theme = "textual-light"

    async def on_mount(self) -> None:
        """Build the session and show the mail screen."""
        self.session = Session.from_config(self.config, enable_sync=self.enable_sync)
        await self.push_screen(MailScreen(self.session))


# =============================================================================
# CLI Entry Point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="Kestrel-TUI: A modal, vim-style terminal Gmail client",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    parser.add_argument(
        "--no-sync",
        action="store_true",
        help="Start from the local cache without syncing",
    )

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for Kestrel-TUI.

    This function:
        1. Parses command-line arguments
        2. Handles special commands (--paths, --version)
        3. Loads and validates configuration
        4. Starts the Textual application

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)

    # Handle --paths flag
    if args.paths:
        print_paths()
        return 0

    try:
        config = Config.load(args.config)
        config.validate()
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1

    log_path = setup_logging(config, debug=args.debug)
    logger.info(f"Starting {__app_name__} {__version__} (log: {log_path})")

    app = KestrelApp(config, enable_sync=not args.no_sync)
    app.run()

    return 0


if __name__ == "__main__":
    sys.exit(main())
