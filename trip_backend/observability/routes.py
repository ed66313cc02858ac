"""Bounded route-template resolution for metric labels."""

from __future__ import annotations

from typing import Iterator

from starlette.routing import BaseRoute, Match, Route, Router
from starlette.types import Scope

UNMATCHED_ROUTE = "unmatched"


class RouteTable:
    """Map a request scope to the template of the route that will serve it.

    Routes declared directly on the application are read from its router.
    Routers mounted with ``include_router`` must also be registered through
    :meth:`include`: depending on the FastAPI release, included routes are
    either copied into the application's route list or kept behind a single
    entry that carries no template. Label values are always one of
    :meth:`templates`, so raw request paths never leak into labels.
    """

    def __init__(self, router: Router) -> None:
        self._router = router
        self._included: list[Route] = []

    def include(self, router: Router, prefix: str = "") -> None:
        """Register the routes of ``router`` as mounted under ``prefix``."""

        for route in router.routes:
            if not isinstance(route, Route):
                continue
            path = f"{prefix}{route.path}" or "/"
            self._included.append(Route(path, route.endpoint, methods=route.methods, name=route.name))

    def _candidates(self) -> Iterator[BaseRoute]:
        for route in self._router.routes:
            if getattr(route, "path_format", None):
                yield route
        yield from self._included

    def templates(self) -> list[str]:
        found = dict.fromkeys(route.path_format for route in self._candidates())
        return list(found) + [UNMATCHED_ROUTE]

    def resolve(self, scope: Scope) -> str:
        partial = None
        for route in self._candidates():
            match, _ = route.matches(scope)
            if match is Match.FULL:
                return route.path_format
            if match is Match.PARTIAL and partial is None:
                partial = route
        if partial is not None:
            # Path matched but the method did not; the 405 is still attributed to the route.
            return partial.path_format
        return UNMATCHED_ROUTE
