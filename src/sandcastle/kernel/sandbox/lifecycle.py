"""Lifecycle - container cleanup that survives signals and interpreter exit.

Every invocation registers one cleanup action here. The normal path is
``dispose_invocation``, which unregisters the action and runs it directly.
The registry is the fallback: on interpreter exit, SIGINT or SIGTERM it runs
every pending action once.

Rules:
1. An action runs at most once; it leaves the pending set before it runs.
2. A cleanup pass runs to completion; triggers arriving during a pass
   are ignored, not queued.
3. A failing action never stops the others. Cleanup failures are logged
   and ignored, never escalated.
4. Handlers are installed at most once per target, keyed by identity.
   Signal listeners count as installed only once the target can take them.
"""

from __future__ import annotations

import atexit
import os
import signal
import sys
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol

import structlog

logger = structlog.get_logger()

EXIT_EVENT = "exit"
SIGINT_EVENT = "SIGINT"
SIGTERM_EVENT = "SIGTERM"

# Shell convention: 128 + signal number.
SIGNAL_EXIT_CODES = {
    SIGINT_EVENT: 130,
    SIGTERM_EVENT: 143,
}

Listener = Callable[..., None]


class ProcessLike(Protocol):
    """Minimal process surface the registry installs handlers on.

    ``HostProcess`` adapts the running interpreter; tests pass a fake so the
    real signal table is never touched. Targets may additionally expose
    ``pid: int`` and ``kill(pid, event)``; without them a signal handler
    falls back to ``exit``. A ``signals_available()`` method returning False
    defers the signal listeners to a later ``ensure_handlers`` call.
    """

    exit_code: Optional[int]

    def on(self, event: str, listener: Listener) -> Any:
        ...

    def remove_listener(self, event: str, listener: Listener) -> Any:
        ...

    def exit(self, code: Optional[int] = None) -> Any:
        ...


class CleanupAction:
    """Zero-argument cleanup callback that runs at most once."""

    def __init__(self, callback: Callable[[], None], label: str = ""):
        self._callback = callback
        self.label = label
        self._has_run = False

    @property
    def has_run(self) -> bool:
        return self._has_run

    def __call__(self) -> None:
        if self._has_run:
            return
        self._has_run = True
        self._callback()

    def __repr__(self) -> str:
        return f"CleanupAction(label={self.label!r}, has_run={self._has_run})"


class CleanupRegistry:
    """Pending cleanup actions plus the exit/signal handlers that drain them.

    One instance per process in production (``get_cleanup_registry``);
    tests create their own so suites never share state.
    """

    def __init__(self) -> None:
        # dict as an insertion-ordered set
        self._actions: Dict[Callable[[], None], None] = {}
        # id(target) -> target; holding the target keeps its id from being reused
        self._exit_installed: Dict[int, object] = {}
        self._signals_installed: Dict[int, object] = {}
        self._cleanup_in_progress = False

    @property
    def cleanup_in_progress(self) -> bool:
        return self._cleanup_in_progress

    def register(self, action: Callable[[], None]) -> None:
        self._actions[action] = None

    def unregister(self, action: Callable[[], None]) -> None:
        self._actions.pop(action, None)

    def pending(self) -> List[Callable[[], None]]:
        return list(self._actions)

    def is_installed(self, target: object) -> bool:
        """Exit and signal handlers are both attached to ``target``."""
        key = id(target)
        return self._exit_installed.get(key) is target and self._signals_installed.get(key) is target

    def run_pending(self) -> int:
        """Run every pending action once, in registration order.

        Returns:
            Number of actions invoked; 0 when a pass is already running.
        """
        if self._cleanup_in_progress:
            logger.debug("sandbox_cleanup_reentry_ignored")
            return 0
        self._cleanup_in_progress = True

        ran = 0
        try:
            for action in list(self._actions):
                # An earlier action may have unregistered this one.
                if action not in self._actions:
                    continue
                del self._actions[action]
                try:
                    action()
                except Exception:
                    logger.warning("sandbox_cleanup_failed", action=repr(action), exc_info=True)
                ran += 1
        finally:
            self._cleanup_in_progress = False

        if ran:
            logger.info("sandbox_cleanup_pass_finished", actions=ran)
        return ran

    def ensure_handlers(self, target: Optional[ProcessLike] = None) -> bool:
        """Install exit/SIGINT/SIGTERM handlers on ``target`` once.

        Signal listeners are skipped while ``target.signals_available()``
        returns False and attached by a later call once it returns True.

        Args:
            target: process-like object, the ``HostProcess`` singleton if None

        Returns:
            True if any handler was installed by this call.
        """
        if target is None:
            target = get_host_process()
        key = id(target)
        installed = False

        if self._exit_installed.get(key) is not target:
            self._exit_installed[key] = target

            def on_exit(*_args: Any) -> None:
                self.run_pending()

            target.on(EXIT_EVENT, on_exit)
            installed = True

        if self._signals_installed.get(key) is not target:
            signals_available = getattr(target, "signals_available", None)
            if signals_available is None or signals_available():
                self._signals_installed[key] = target
                target.on(SIGINT_EVENT, self._make_signal_listener(target, SIGINT_EVENT))
                target.on(SIGTERM_EVENT, self._make_signal_listener(target, SIGTERM_EVENT))
                installed = True
            else:
                logger.warning("sandbox_signal_handlers_deferred", target=type(target).__name__)

        if installed:
            logger.debug(
                "sandbox_cleanup_handlers_installed",
                target=type(target).__name__,
                signals=self._signals_installed.get(key) is target,
            )
        return installed

    def _make_signal_listener(self, target: ProcessLike, event: str) -> Listener:
        default_code = SIGNAL_EXIT_CODES[event]

        def listener(*_args: Any) -> None:
            if self._cleanup_in_progress:
                return

            self.run_pending()

            if not isinstance(target.exit_code, int):
                target.exit_code = default_code

            # Re-delivering the signal below must not land back here.
            target.remove_listener(event, listener)

            kill = getattr(target, "kill", None)
            pid = getattr(target, "pid", None)
            if callable(kill) and isinstance(pid, int):
                try:
                    kill(pid, event)
                    return
                except Exception:
                    logger.debug("sandbox_signal_reraise_failed", signal=event, exc_info=True)

            target.exit(target.exit_code)

        return listener


class HostProcess:
    """``ProcessLike`` adapter over the running interpreter.

    - ``exit`` listeners are ``atexit`` hooks
    - signal listeners share one ``signal.signal`` dispatcher per signal;
      removing the last listener restores the handler that was there before
      (``SIG_DFL`` if it was not installed from Python)
    - ``kill`` is ``os.kill``, ``exit`` is ``sys.exit``

    Python only allows signal handlers on the main thread; elsewhere
    ``signals_available`` is False and ``on`` skips signal listeners with a
    warning.
    """

    def __init__(self) -> None:
        self.exit_code: Optional[int] = None
        self._exit_hooks: Dict[Listener, Callable[[], None]] = {}
        self._signal_listeners: Dict[str, List[Listener]] = {}
        self._previous_handlers: Dict[str, Any] = {}

    @property
    def pid(self) -> int:
        return os.getpid()

    def signals_available(self) -> bool:
        return threading.current_thread() is threading.main_thread()

    def on(self, event: str, listener: Listener) -> "HostProcess":
        if event == EXIT_EVENT:
            def hook() -> None:
                listener(self.exit_code)

            self._exit_hooks[listener] = hook
            atexit.register(hook)
            return self

        signum = _signal_number(event)
        listeners = self._signal_listeners.setdefault(event, [])
        if not listeners:
            if not self.signals_available():
                logger.warning("sandbox_signal_handler_skipped", signal=event, reason="not_main_thread")
                return self
            self._previous_handlers[event] = signal.signal(signum, self._dispatch)
        listeners.append(listener)
        return self

    def remove_listener(self, event: str, listener: Listener) -> "HostProcess":
        if event == EXIT_EVENT:
            hook = self._exit_hooks.pop(listener, None)
            if hook is not None:
                atexit.unregister(hook)
            return self

        listeners = self._signal_listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)
        if not listeners and event in self._previous_handlers:
            previous = self._previous_handlers.pop(event)
            signal.signal(_signal_number(event), previous if previous is not None else signal.SIG_DFL)
        return self

    def kill(self, pid: int, event: str) -> None:
        os.kill(pid, _signal_number(event))

    def exit(self, code: Optional[int] = None) -> None:
        sys.exit(code)

    def _dispatch(self, signum: int, _frame: Any) -> None:
        event = signal.Signals(signum).name
        for listener in list(self._signal_listeners.get(event, [])):
            listener()


def _signal_number(event: str) -> int:
    signum = getattr(signal, event, None)
    if not isinstance(signum, int):
        raise ValueError(f"unsupported signal event: {event!r}")
    return signum


_host_process: Optional[HostProcess] = None
_default_registry: Optional[CleanupRegistry] = None


def get_host_process() -> HostProcess:
    """Return the ``HostProcess`` singleton."""
    global _host_process
    if _host_process is None:
        _host_process = HostProcess()
    return _host_process


def get_cleanup_registry() -> CleanupRegistry:
    """Return the process-wide cleanup registry (created on first use)."""
    global _default_registry
    if _default_registry is None:
        _default_registry = CleanupRegistry()
    return _default_registry


def register_cleanup(action: Callable[[], None]) -> None:
    get_cleanup_registry().register(action)


def unregister_cleanup(action: Callable[[], None]) -> None:
    get_cleanup_registry().unregister(action)


def ensure_process_cleanup_handlers(target: Optional[ProcessLike] = None) -> bool:
    return get_cleanup_registry().ensure_handlers(target)
