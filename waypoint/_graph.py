"""
Graph runner — sugar over nodnod.

    from waypoint import _graph as G

    @G.node
    class FetchKey:
        @classmethod
        async def __compose__(cls, request: InitRequest) -> "FetchKey":
            return cls(await request.store.get(request.token))

    node = await G.run(FetchKey).inject(request)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, cast
from collections.abc import Callable, Coroutine

from nodnod import Scope, Value, EventLoopAgent, Node, scalar_node as node


# ═══════════════════════════════════════════════════════════════════════════════
# Run — awaitable builder
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(slots=True, frozen=True)
class Run[T]:
    """
    Resolves a target node, discovering its dependencies.

    Injected values are keyed by their runtime type.
    """

    _target: type[T]
    _injections: tuple[tuple[type[Any], Any], ...]

    def inject(self, value: object) -> Run[T]:
        value_type = cast(type[Any], type(value))
        return Run(
            _target=self._target,
            _injections=(*self._injections, (value_type, value)),
        )

    def __await__(self) -> Any:
        return self._execute().__await__()

    async def _execute(self) -> T:
        all_nodes: set[type[Node[Any, Any]]] = {
            cast(type[Node[Any, Any]], self._target)
        }
        agent = EventLoopAgent.build(all_nodes)

        scope = Scope(detail="waypoint")
        async with scope:
            for typ, value in self._injections:
                scope.push(Value(typ, value))

            run_method = cast(
                Callable[[Scope, dict[type[Any], Scope]], Coroutine[Any, Any, None]],
                getattr(agent, "run"),
            )
            await run_method(scope, {})

            resolved = scope.get(self._target)
            if resolved is None:
                raise KeyError(f"{self._target.__name__} was not resolved")
            return cast(T, resolved.value)


def run[T](target: type[T]) -> Run[T]:
    """Start resolving ``target``."""
    return Run(_target=target, _injections=())


__all__ = ("node", "Run", "run")
