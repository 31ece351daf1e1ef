class DownpourError(Exception):
    """Base class for harness-level failures."""


class ConfigError(DownpourError):
    pass


class TargetUnreachableError(DownpourError):
    def __init__(self, base_url: str, detail: str):
        super().__init__(f"Target {base_url} is unreachable: {detail}")
        self.base_url = base_url
        self.detail = detail


class SinkClosedError(DownpourError):
    """Raised when the outcome sink is used after close."""


class PerformanceAssertionError(DownpourError):
    def __init__(self, violations: list[str]):
        super().__init__("; ".join(violations))
        self.violations = violations


class ScenarioError(DownpourError):
    def __init__(self, name: str, cause: BaseException):
        super().__init__(f"scenario {name} failed: {cause}")
        self.name = name
        self.cause = cause
