"""
Ledger error kinds.

Callers (UI, workers, importers) only need to tell these apart; message
rendering for operators happens outside the core.
"""


class LedgerError(Exception):
    """Base class for every error raised by the stock ledger core."""


class ValidationError(LedgerError, ValueError):
    """A movement or document broke a field rule and was not applied."""

    def __init__(self, field: str, rule: str):
        self.field = field
        self.rule = rule
        super().__init__(f"{field}: {rule}")


class ThresholdConfigError(LedgerError, ValueError):
    """Threshold configuration violates its ordering or range rules."""


class AlertNotFoundError(LedgerError, LookupError):
    def __init__(self, alert_id):
        self.alert_id = alert_id
        super().__init__(f"Alert {alert_id} not found")


class AlertAlreadyResolvedError(LedgerError):
    def __init__(self, alert_id):
        self.alert_id = alert_id
        super().__init__(f"Alert {alert_id} is already resolved")
