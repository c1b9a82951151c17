import asyncio
import signal


def install_stop_handlers(stop_event: asyncio.Event) -> None:
    """SIGINT/SIGTERM let the current cycle finish, then the loop exits."""

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))
