"""External actor implementations and the factory that builds them."""

import importlib
from collections.abc import Callable
from typing import Any

from formrunner.actors.http import HttpActorOptions, HttpFormActor
from formrunner.contracts import ExternalActor
from formrunner.core.config import ActorSettings

_BUILTIN_ACTORS: dict[str, Callable[[dict[str, Any]], ExternalActor]] = {
    "http": HttpFormActor.from_options,
}


def _load_class(import_path: str) -> type:
    module_name, _, class_name = import_path.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"Cannot import actor module {module_name!r}: {e}") from e
    try:
        actor_class: type = getattr(module, class_name)
    except AttributeError:
        raise ValueError(f"Module {module_name!r} has no attribute {class_name!r}") from None
    return actor_class


def create_actor(settings: ActorSettings) -> ExternalActor:
    """Build the actor named by ``settings.plugin``.

    Built-in names map to the classes in this package. An import path
    ``package.module:ClassName`` is instantiated with ``options`` as keyword
    arguments.

    Raises:
        ValueError: Unknown plugin name, bad import path, or an object that
            does not satisfy the ExternalActor protocol.
    """
    options = dict(settings.options)
    if settings.plugin in _BUILTIN_ACTORS:
        actor = _BUILTIN_ACTORS[settings.plugin](options)
    elif ":" in settings.plugin:
        actor = _load_class(settings.plugin)(**options)
    else:
        available = ", ".join(sorted(_BUILTIN_ACTORS))
        raise ValueError(f"Unknown actor plugin {settings.plugin!r}. Available: {available}, or 'package.module:ClassName'")

    if not isinstance(actor, ExternalActor):
        raise ValueError(f"{type(actor).__name__} does not implement establish_session/process_item/release")
    return actor


def actor_factory(settings: ActorSettings) -> Callable[[], ExternalActor]:
    """A zero-argument factory; ControlService builds a fresh actor per run."""
    return lambda: create_actor(settings)


__all__ = ["HttpActorOptions", "HttpFormActor", "actor_factory", "create_actor"]
