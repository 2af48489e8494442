from __future__ import annotations

import asyncio
import enum
import signal
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Union

from .log import get_logger

log = get_logger(__name__)


class TerminationSignal(str, enum.Enum):
    SIGINT = "SIGINT"
    SIGTERM = "SIGTERM"

    @property
    def exit_code(self) -> int:
        return SIGNAL_EXIT_CODES[self]

    @property
    def signum(self) -> int:
        return int(getattr(signal, self.value))

    @classmethod
    def from_exit_code(cls, exit_code: Optional[int]) -> Optional["TerminationSignal"]:
        for member, code in SIGNAL_EXIT_CODES.items():
            if exit_code == code:
                return member
        return None


SIGNAL_EXIT_CODES: Dict[TerminationSignal, int] = {
    TerminationSignal.SIGINT: 130,
    TerminationSignal.SIGTERM: 143,
}

SignalLike = Union[str, int, signal.Signals, TerminationSignal, None]


def signal_name(value: SignalLike) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, TerminationSignal):
        return value.value
    if isinstance(value, signal.Signals):
        return value.name
    if isinstance(value, int):
        try:
            return signal.Signals(value).name
        except ValueError:
            return None
    text = str(value).strip().upper()
    if not text:
        return None
    return text if text.startswith("SIG") else f"SIG{text}"


def normalize_termination(sig: SignalLike, exit_code: Optional[int]) -> Optional[TerminationSignal]:
    """Map a reported signal, or its conventional 128+N exit code, to an interruption cause."""
    name = signal_name(sig)
    if name in TerminationSignal.__members__:
        return TerminationSignal[name]
    return TerminationSignal.from_exit_code(exit_code)


def exit_for_signal(sig: TerminationSignal) -> None:
    """Re-raise ``sig`` on this process so other handlers run, then exit with its code.

    With Python's default SIGINT handler installed this surfaces as KeyboardInterrupt.
    """
    log.debug("signals.reraise", signal=sig.value, exit_code=sig.exit_code)
    try:
        signal.raise_signal(sig.signum)
    except (OSError, ValueError) as exc:
        log.debug("signals.reraise_failed", signal=sig.value, error=str(exc))
    raise SystemExit(sig.exit_code)


class InterruptWatch:
    """Records the first SIGINT/SIGTERM delivered while an invocation is in flight."""

    def __init__(self) -> None:
        self.received: Optional[TerminationSignal] = None
        self._event: Optional[asyncio.Event] = None

    def event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self.received is not None:
                self._event.set()
        return self._event

    def trigger(self, sig: TerminationSignal) -> None:
        if self.received is None:
            self.received = sig
            log.info("signals.interrupt_received", signal=sig.value)
        if self._event is not None:
            self._event.set()


@contextmanager
def interrupt_scope(loop: Optional[asyncio.AbstractEventLoop] = None) -> Iterator[InterruptWatch]:
    """Install SIGINT/SIGTERM handlers for the duration of one invocation.

    Handlers are removed and the previous dispositions restored on exit. On
    platforms or threads where handlers cannot be installed the watch is
    returned inert.
    """
    watch = InterruptWatch()
    installed: List[signal.Signals] = []
    previous: Dict[signal.Signals, Any] = {}
    if loop is None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
    for member in TerminationSignal:
        signum = signal.Signals(member.signum)
        try:
            previous[signum] = signal.getsignal(signum)
            if loop is not None:
                loop.add_signal_handler(signum, watch.trigger, member)
            else:
                signal.signal(signum, lambda _num, _frame, member=member: watch.trigger(member))
            installed.append(signum)
        except (NotImplementedError, RuntimeError, ValueError) as exc:
            log.debug("signals.handler_unavailable", signal=member.value, error=str(exc))
    try:
        yield watch
    finally:
        for signum in installed:
            try:
                if loop is not None:
                    loop.remove_signal_handler(signum)
                original = previous.get(signum)
                if original is not None:
                    signal.signal(signum, original)
            except (NotImplementedError, RuntimeError, ValueError) as exc:
                log.debug("signals.handler_restore_failed", signal=signum.name, error=str(exc))
