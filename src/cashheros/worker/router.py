"""Pick the strategy for an intercepted request."""

from __future__ import annotations

from cashheros.worker.http import FetchRequest
from cashheros.worker.strategies import Strategy


class StrategyRouter:
    """Same-origin GET requests by destination; everything else is not intercepted.

    ============  =========================  ===========
    destination   strategy                   cache
    ============  =========================  ===========
    navigation    network-first, shell       pages
    image         cache-first, placeholder   images
    script/style  stale-while-revalidate     static
    /api GET      network-first              api
    other         cache-first                dynamic
    ============  =========================  ===========
    """

    def __init__(
        self,
        origin: str,
        *,
        pages: Strategy,
        images: Strategy,
        static: Strategy,
        api: Strategy,
        dynamic: Strategy,
    ) -> None:
        self.origin = origin.rstrip("/").lower()
        self.pages = pages
        self.images = images
        self.static = static
        self.api = api
        self.dynamic = dynamic

    def is_same_origin(self, request: FetchRequest) -> bool:
        return request.origin.lower() == self.origin

    def route(self, request: FetchRequest) -> Strategy | None:
        if not self.is_same_origin(request) or request.method != "GET":
            return None
        if request.mode == "navigate":
            return self.pages
        if request.destination == "image":
            return self.images
        if request.destination in ("script", "style"):
            return self.static
        if request.is_api:
            return self.api
        return self.dynamic
