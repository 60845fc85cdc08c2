"""
Startup and readiness checks for a built upload setup.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from s3relay.core.builder import UploadSetup
from s3relay.storage.providers import validate_provider_config

logger = structlog.get_logger(__name__)


@dataclass
class HealthCheck:
    name: str
    passed: bool
    message: str = ""
    duration_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthReport:
    checks: List[HealthCheck] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return all(check.passed for check in self.checks)

    def get(self, name: str) -> Optional[HealthCheck]:
        for check in self.checks:
            if check.name == name:
                return check
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "checks": {
                check.name: {
                    "passed": check.passed,
                    "message": check.message,
                    "duration_ms": round(check.duration_ms, 2),
                    **check.details,
                }
                for check in self.checks
            },
        }


def _check_configuration(setup: UploadSetup) -> HealthCheck:
    started = time.perf_counter()
    validation = validate_provider_config(setup.config.provider_config)
    connection = setup.config.connection
    return HealthCheck(
        name="configuration",
        passed=validation.valid,
        message="Configuration is valid" if validation.valid else "; ".join(validation.errors),
        duration_ms=(time.perf_counter() - started) * 1000,
        details={
            "provider": connection.provider.value,
            "bucket": connection.bucket,
        },
    )


async def _check_connectivity(setup: UploadSetup) -> HealthCheck:
    started = time.perf_counter()
    result = await setup.storage.validation.connection()
    return HealthCheck(
        name="connectivity",
        passed=result.success,
        message="Bucket is reachable" if result.success else result.error or "Connection failed",
        duration_ms=(time.perf_counter() - started) * 1000,
    )


async def check_health(setup: UploadSetup, check_connectivity: bool = True) -> HealthReport:
    """
    Run the configuration check and, optionally, a bucket connectivity check.

    Args:
        setup: Result of ``UploadConfigBuilder.build``
        check_connectivity: Issue a ``HEAD`` against the bucket

    Returns:
        Report whose ``healthy`` flag is the conjunction of all checks
    """
    report = HealthReport()
    report.checks.append(_check_configuration(setup))
    if check_connectivity:
        report.checks.append(await _check_connectivity(setup))

    log = logger.info if report.healthy else logger.warning
    log("Health check finished", healthy=report.healthy, failed=[c.name for c in report.checks if not c.passed])
    return report
