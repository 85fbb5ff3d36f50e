from __future__ import annotations

from types import SimpleNamespace


class StubSessionFactory:
    def __init__(self) -> None:
        self.sessions: list[object] = []

    class _Transaction:
        def __init__(self, factory: StubSessionFactory) -> None:
            self._factory = factory

        async def __aenter__(self) -> object:
            session = SimpleNamespace()
            self._factory.sessions.append(session)
            return session

        async def __aexit__(self, exc_type, exc, tb) -> bool:
            return False

    def begin(self) -> _Transaction:
        return self._Transaction(self)


class AlertRecorder:
    def __init__(self, *, delivered: bool = True) -> None:
        self.delivered = delivered
        self.calls: list[dict[str, object]] = []

    async def __call__(self, *, event: str, payload: dict[str, object]) -> bool:
        self.calls.append({"event": event, "payload": payload})
        return self.delivered
