"""
Authentication handler registry and hooks.

Handlers are registered by name and called with the AuthManager plus
keyword arguments. Hooks run around every handler execution:

* ``pre-auth`` before the handler
* ``post-auth-success`` or ``post-auth-failure`` after it
* ``post-auth`` last, whatever the outcome

Hooks run in ascending priority order. A hook that raises is logged and
skipped; it never changes the handler's result.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from awstools.envelope import Envelope, is_success, make_error
from awstools.errors import INVALID_PARAMETER

logger = logging.getLogger(__name__)

HOOK_TYPES = ("pre-auth", "post-auth-success", "post-auth-failure", "post-auth")
DEFAULT_HOOK_PRIORITY = 50

Handler = Callable[..., Envelope]
Hook = Callable[[str, Dict[str, Any], Optional[Envelope]], None]


@dataclass
class HandlerEntry:
    name: str
    handler: Handler
    description: str = ""
    version: str = "1.0.0"
    dependencies: Tuple[str, ...] = ()


@dataclass
class AuthRegistry:
    handlers: Dict[str, HandlerEntry] = field(default_factory=dict)
    hooks: Dict[str, List[Tuple[int, int, Hook]]] = field(default_factory=dict)

    def register(
        self,
        name: str,
        handler: Handler,
        description: str = "",
        version: str = "1.0.0",
        dependencies: Tuple[str, ...] = (),
    ) -> None:
        if not name:
            raise ValueError("Handler name is required")
        if name in self.handlers:
            logger.warning(f"Overriding authentication handler: {name}")
        self.handlers[name] = HandlerEntry(name, handler, description, version, dependencies)
        logger.debug(f"Registered authentication handler: {name}")

    def unregister(self, name: str) -> None:
        self.handlers.pop(name, None)

    def get(self, name: str) -> HandlerEntry:
        """Return a handler entry.

        Raises:
            KeyError: If no handler is registered under ``name``
        """
        return self.handlers[name]

    def exists(self, name: str) -> bool:
        return name in self.handlers

    def names(self) -> List[str]:
        return sorted(self.handlers)

    def register_hook(self, hook_type: str, hook: Hook, priority: int = DEFAULT_HOOK_PRIORITY) -> None:
        if hook_type not in HOOK_TYPES:
            raise ValueError(
                f"Invalid hook type '{hook_type}'. Must be one of: {', '.join(HOOK_TYPES)}"
            )
        entries = self.hooks.setdefault(hook_type, [])
        # Registration order breaks priority ties
        entries.append((priority, len(entries), hook))
        entries.sort(key=lambda entry: entry[:2])

    def run_hooks(
        self, hook_type: str, handler_name: str, kwargs: Dict[str, Any],
        result: Optional[Envelope] = None,
    ) -> None:
        for _, _, hook in self.hooks.get(hook_type, []):
            try:
                hook(handler_name, kwargs, result)
            except Exception as e:
                logger.warning(f"Hook {getattr(hook, '__name__', hook)} failed: {e}")

    def execute(self, name: str, manager: Any, **kwargs) -> Envelope:
        """Run a handler with its hooks.

        Returns:
            The handler's envelope, or an error envelope for an unknown handler
        """
        if not self.exists(name):
            message = f"Authentication handler not found: {name}"
            logger.error(message)
            return make_error("execute_handler", "auth", INVALID_PARAMETER, message)

        self.run_hooks("pre-auth", name, kwargs)
        logger.debug(f"Executing authentication handler: {name}")
        result = self.handlers[name].handler(manager, **kwargs)
        if is_success(result):
            self.run_hooks("post-auth-success", name, kwargs, result)
        else:
            self.run_hooks("post-auth-failure", name, kwargs, result)
        self.run_hooks("post-auth", name, kwargs, result)
        return result


def _redact(kwargs: Dict[str, Any]) -> Dict[str, Any]:
    return {k: ("****" if "token" in k or "secret" in k else v) for k, v in kwargs.items()}


def register_logging_hooks(registry: AuthRegistry, log_file: Optional[str] = None) -> None:
    """Log every handler execution, and append it to ``log_file`` if set."""

    def append(line: str) -> None:
        if log_file:
            with open(log_file, "a") as f:
                f.write(f"[{datetime.now():%Y-%m-%d %H:%M:%S}] {line}\n")

    def pre_auth(handler_name, kwargs, result):
        logger.info(f"Starting authentication with handler: {handler_name}")
        logger.debug(f"Handler arguments: {_redact(kwargs)}")
        append(f"PRE-AUTH: handler={handler_name} args={_redact(kwargs)}")

    def post_auth_success(handler_name, kwargs, result):
        logger.info(f"Authentication successful with handler: {handler_name}")
        append(f"POST-AUTH-SUCCESS: handler={handler_name}")

    def post_auth_failure(handler_name, kwargs, result):
        logger.warning(f"Authentication failed with handler: {handler_name}")
        append(f"POST-AUTH-FAILURE: handler={handler_name} error={result.error_code}")

    registry.register_hook("pre-auth", pre_auth, 10)
    registry.register_hook("post-auth-success", post_auth_success, 10)
    registry.register_hook("post-auth-failure", post_auth_failure, 10)
