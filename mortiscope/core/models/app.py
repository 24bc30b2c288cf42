# mortiscope/core/models/app.py
from __future__ import annotations

import logging
import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from mortiscope.core.defaults import (
    DEFAULT_ANALYSIS_TIMEOUT_SECONDS,
    DEFAULT_CLAIM_LEASE_SECONDS,
    DEFAULT_RETRIES,
    DEFAULT_RETRY_BASE_SECONDS,
)
from mortiscope.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)
from mortiscope.core.models.broker import PostgresConfig
from mortiscope.core.utils.db import mask_database_url


class AnalysisServiceConfig(BaseModel):
    """Location and shared secret of the detection / PMI estimation service.

    Both fields may be absent at construction time. Workflow steps call
    require(), so a missing value fails the run (and goes through retries and
    compensation) instead of preventing the worker from starting.
    """

    model_config = ConfigDict(frozen=True)

    base_url: Optional[str] = None
    secret_key: Optional[str] = None
    timeout_seconds: float = Field(default=DEFAULT_ANALYSIS_TIMEOUT_SECONDS, gt=0)
    # In-step retries when the service reports its own database connection dropped
    transient_retry_attempts: int = Field(default=3, ge=1, le=10)
    transient_retry_base_seconds: float = Field(default=2.0, ge=0)

    @classmethod
    def from_env(cls) -> AnalysisServiceConfig:
        return cls(
            base_url=os.environ.get('MORTISCOPE_ANALYSIS_URL') or None,
            secret_key=os.environ.get('MORTISCOPE_ANALYSIS_SECRET') or None,
        )

    def require(self) -> tuple[str, str]:
        """Return (base_url, secret_key) or raise ConfigurationError."""
        missing = [
            name
            for name, value in (('base_url', self.base_url), ('secret_key', self.secret_key))
            if not value
        ]
        if missing:
            raise ConfigurationError(
                message='Analysis service URL or secret key is not configured',
                code=ErrorCode.CONFIG_MISSING_ANALYSIS_SERVICE,
                notes=[f"missing: {', '.join(missing)}"],
                help_text=(
                    'set MORTISCOPE_ANALYSIS_URL and MORTISCOPE_ANALYSIS_SECRET\n'
                    'or pass AnalysisServiceConfig(base_url=..., secret_key=...)'
                ),
            )
        assert self.base_url is not None and self.secret_key is not None
        return self.base_url.rstrip('/'), self.secret_key


class MailConfig(BaseModel):
    """SMTP settings for account notification emails."""

    model_config = ConfigDict(frozen=True)

    host: str = 'localhost'
    port: int = 1025
    username: Optional[str] = None
    password: Optional[str] = None
    from_address: str = 'MortiScope <noreply@mortiscope.local>'
    use_tls: bool = False

    @classmethod
    def from_env(cls) -> MailConfig:
        return cls(
            host=os.environ.get('MORTISCOPE_SMTP_HOST', 'localhost'),
            port=int(os.environ.get('MORTISCOPE_SMTP_PORT', '1025')),
            username=os.environ.get('MORTISCOPE_SMTP_USERNAME') or None,
            password=os.environ.get('MORTISCOPE_SMTP_PASSWORD') or None,
            from_address=os.environ.get(
                'MORTISCOPE_SMTP_FROM', 'MortiScope <noreply@mortiscope.local>'
            ),
            use_tls=os.environ.get('MORTISCOPE_SMTP_TLS', '').lower()
            in ('1', 'true', 'yes'),
        )


class ExecutorConfig(BaseModel):
    """Polling, claiming and retry defaults of the step executor."""

    model_config = ConfigDict(frozen=True)

    poll_interval_seconds: float = 1.0
    batch_size: int = 10
    claim_lease_seconds: int = DEFAULT_CLAIM_LEASE_SECONDS
    default_retries: int = DEFAULT_RETRIES
    retry_base_seconds: int = DEFAULT_RETRY_BASE_SECONDS

    @model_validator(mode='after')
    def validate_executor_settings(self) -> ExecutorConfig:
        """Collect every invalid field and raise them together."""
        report = ValidationReport('executor')
        checks = [
            ('poll_interval_seconds', self.poll_interval_seconds > 0, 'a positive number'),
            ('batch_size', self.batch_size >= 1, 'at least 1'),
            ('claim_lease_seconds', self.claim_lease_seconds >= 1, 'at least 1'),
            ('default_retries', 0 <= self.default_retries <= 20, 'between 0 and 20'),
            ('retry_base_seconds', self.retry_base_seconds >= 1, 'at least 1'),
        ]
        for field_name, valid, expectation in checks:
            if not valid:
                report.add(
                    ConfigurationError(
                        message=f'{field_name} must be {expectation}',
                        code=ErrorCode.CONFIG_INVALID_EXECUTOR,
                        notes=[f'got {field_name}={getattr(self, field_name)}'],
                    )
                )
        raise_collected(report)
        return self


class AppConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    broker: PostgresConfig
    analysis: AnalysisServiceConfig = Field(default_factory=AnalysisServiceConfig.from_env)
    mail: Optional[MailConfig] = None
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)

    def log_config(self, logger: Optional[logging.Logger] = None) -> None:
        """Log the effective configuration with secrets masked."""
        logger = logger or logging.getLogger('mortiscope.app')
        logger.info(f'database: {mask_database_url(self.broker.database_url)}')
        logger.info(
            f'analysis service: {self.analysis.base_url or "<not configured>"} '
            f'(secret {"set" if self.analysis.secret_key else "missing"})'
        )
        logger.info(f'mail: {self.mail.host if self.mail else "<disabled>"}')
        logger.info(
            f'executor: poll={self.executor.poll_interval_seconds}s '
            f'batch={self.executor.batch_size} '
            f'lease={self.executor.claim_lease_seconds}s '
            f'retries={self.executor.default_retries}'
        )
