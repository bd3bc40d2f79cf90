from __future__ import annotations

# Process exit codes, one per failure category.
EXIT_OK = 0
EXIT_INVALID_DESCRIPTOR = 3
EXIT_CYCLE = 4
EXIT_MIGRATION = 5
EXIT_CERTIFICATE = 6
EXIT_SERVICE_FAILED = 7
EXIT_INVALID_CONFIG = 8


class DSOError(Exception):
    exit_code = 1


class InvalidDescriptorError(DSOError):
    """The service descriptor could not be loaded or failed validation."""

    exit_code = EXIT_INVALID_DESCRIPTOR


class CyclicDependencyError(DSOError):
    exit_code = EXIT_CYCLE

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class ServiceUnhealthyError(DSOError):
    exit_code = EXIT_SERVICE_FAILED

    def __init__(self, service: str, detail: str):
        self.service = service
        self.detail = detail
        super().__init__(f"Service '{service}' is unhealthy: {detail}")


class MigrationApplyError(DSOError):
    exit_code = EXIT_MIGRATION

    def __init__(self, version: int, detail: str):
        self.version = version
        self.detail = detail
        super().__init__(f"Migration {version} failed: {detail}")


class ChallengeFailedError(DSOError):
    exit_code = EXIT_CERTIFICATE

    def __init__(self, domain: str, detail: str):
        self.domain = domain
        self.detail = detail
        super().__init__(f"Certificate challenge for '{domain}' failed: {detail}")


class InvalidConfigError(DSOError):
    """The proxy rejected a rendered configuration; the previous one stays active."""

    exit_code = EXIT_INVALID_CONFIG
