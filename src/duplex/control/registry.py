"""CallbackRegistry: host permission and hook callbacks for one session."""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from duplex.control.models import HookCallback, PermissionCallback

if TYPE_CHECKING:
    from duplex.config.models import HookMatcher


class CallbackRegistry:
    """Maps callback ids to host hook functions, plus the permission callback.

    One registry is built per session and handed to the ``ControlProtocol``
    by reference.  Hooks are registered while the ``initialize`` request is
    being built; afterwards the registry is only read.

    Thread-safe: registration is serialized through a ``threading.Lock``.
    """

    def __init__(self, permission_callback: PermissionCallback | None = None) -> None:
        self._permission_callback = permission_callback
        self._hooks: dict[str, HookCallback] = {}
        self._next_id = 0
        self._lock = threading.Lock()

    @property
    def permission_callback(self) -> PermissionCallback | None:
        """The host's tool-permission callback, if any."""
        return self._permission_callback

    @property
    def hook_count(self) -> int:
        """Number of registered hook callbacks."""
        return len(self._hooks)

    def register_hook(self, callback: HookCallback) -> str:
        """Register *callback* and return its newly assigned id."""
        with self._lock:
            callback_id = f"hook_{self._next_id}"
            self._next_id += 1
            self._hooks[callback_id] = callback
        return callback_id

    def get_hook(self, callback_id: str) -> HookCallback | None:
        """Return the hook registered under *callback_id*, or ``None``."""
        return self._hooks.get(callback_id)

    def build_hooks_config(
        self, hooks: Mapping[str, Sequence[HookMatcher]] | None
    ) -> dict[str, list[dict[str, Any]]]:
        """Register every declared hook and return the ``initialize`` hooks map.

        Each matcher becomes ``{"matcher", "hookCallbackIds", "timeout"?}``
        under its event name.  Events with no matchers are omitted.
        """
        config: dict[str, list[dict[str, Any]]] = {}
        for event, matchers in (hooks or {}).items():
            if not matchers:
                continue
            entries: list[dict[str, Any]] = []
            for matcher in matchers:
                entry: dict[str, Any] = {
                    "matcher": matcher.matcher,
                    "hookCallbackIds": [self.register_hook(h) for h in matcher.hooks],
                }
                if matcher.timeout is not None:
                    entry["timeout"] = matcher.timeout
                entries.append(entry)
            config[event] = entries
        return config
