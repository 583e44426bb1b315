class SettlementError(Exception):
    pass


class ValidationError(SettlementError):
    """Rejected input. No side effects happened."""


class NotFoundError(SettlementError):
    pass


class InvalidTransition(SettlementError):
    def __init__(self, entity: str, entity_id: str, current: str, target: str) -> None:
        super().__init__(f"{entity} {entity_id} cannot move from {current} to {target}")
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target


class TransientError(SettlementError):
    """External failure worth retrying (timeouts, 5xx, rate limits)."""


class TerminalError(SettlementError):
    """Business failure. The job stops and the entity is marked failed."""


class PollAgain(SettlementError):
    """Raised by repeating tasks when the external state has not settled yet."""

    def __init__(self, reason: str = "not settled") -> None:
        super().__init__(reason)
        self.reason = reason


class SwapProviderError(SettlementError):
    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500

    @property
    def refused(self) -> bool:
        """The venue turned the request away before accepting an order."""
        return self.status_code in (429, 503)
