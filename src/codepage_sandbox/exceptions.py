"""Host-side exception hierarchy for codepage-sandbox."""


class CodepageSandboxError(Exception):
    """Base exception for all codepage-sandbox errors."""

    pass


class ConfigurationError(CodepageSandboxError):
    """Raised when configuration is invalid or missing."""

    pass


class InfrastructureError(CodepageSandboxError):
    """Raised when a backing service (store, process spawner) fails."""

    pass


class StoreUnavailableError(InfrastructureError):
    """Raised when a repository cannot accept or serve data."""

    pass


class NoResultsError(CodepageSandboxError):
    """Raised when a report is requested for a key without recorded results."""

    def __init__(self, project_id: str, version_id: str):
        super().__init__(
            f"No test results found for project {project_id!r} version {version_id!r}"
        )
        self.project_id = project_id
        self.version_id = version_id


class AlertRuleNotFoundError(CodepageSandboxError):
    """Raised when an alert rule id is unknown."""

    pass


class AlertNotFoundError(CodepageSandboxError):
    """Raised when an alert id is unknown."""

    pass
