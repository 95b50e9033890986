"""
Utility functions for the hwicontrol library
"""
import asyncio
import sys
from typing import Any, Callable

from .exceptions import HwiConfigurationError, HwiConnectionError


def run_with_keyboard_interrupt(main_func: Callable[..., Any], *args) -> None:
    """
    Run an async entry point until it returns or Ctrl+C is pressed.

    Exit codes:
        0 - finished, or interrupted by the user
        1 - unexpected error
        2 - the panel or IPC server could not be reached
        3 - invalid configuration

    Args:
        main_func: The async main function to run
        *args: Passed to main_func
    """
    try:
        asyncio.run(main_func(*args))
    except KeyboardInterrupt:
        print("\n🛑 Interrupted by user (Ctrl+C), shutting down")
        sys.exit(0)
    except HwiConnectionError as e:
        print(f"❌ Unable to reach HWI panel: {e}")
        sys.exit(2)
    except (HwiConfigurationError, ValueError) as e:
        print(f"❌ Configuration error: {e}")
        sys.exit(3)
    except Exception as e:
        print(f"❌ Error: {e}")
        sys.exit(1)
