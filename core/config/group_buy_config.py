#!/usr/bin/env python3
"""Group-buy platform configuration

Campaign timing rules, payment retry bounds and scheduler intervals, plus the
shared logging, infrastructure and peer-service sub-configs.
"""
import os
from dataclasses import dataclass, field

from .logging_config import LoggingConfig
from .infra_config import InfraConfig
from .service_config import ServiceConfig

def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


# ===========================================
# Campaign rules
# ===========================================

@dataclass
class CampaignRulesConfig:
    """Timing rules for the campaign lifecycle"""
    # ACTIVE campaigns ending within this window enter GRACE_PERIOD
    grace_period_lead_time_hours: int = 48
    # grace_period_end_date = end_date + extension
    grace_period_extension_hours: int = 0

    @classmethod
    def from_env(cls) -> 'CampaignRulesConfig':
        return cls(
            grace_period_lead_time_hours=_int(os.getenv("GRACE_PERIOD_LEAD_TIME_HOURS", "48"), 48),
            grace_period_extension_hours=_int(os.getenv("GRACE_PERIOD_EXTENSION_HOURS", "0"), 0),
        )


# ===========================================
# Payment retries
# ===========================================

@dataclass
class PaymentRetryConfig:
    """Bounded retry settings for payment intents"""
    max_retries: int = 3
    # An in-flight claim older than this is treated as abandoned
    processing_lease_seconds: int = 300

    @classmethod
    def from_env(cls) -> 'PaymentRetryConfig':
        return cls(
            max_retries=_int(os.getenv("PAYMENT_MAX_RETRIES", "3"), 3),
            processing_lease_seconds=_int(os.getenv("PAYMENT_PROCESSING_LEASE_SECONDS", "300"), 300),
        )


# ===========================================
# Scheduler
# ===========================================

@dataclass
class SchedulerConfig:
    """Periodic job intervals"""
    enabled: bool = True
    grace_period_trigger_interval_seconds: int = 3600
    campaign_evaluation_interval_seconds: int = 3600
    payment_retry_interval_seconds: int = 3600
    payment_collection_interval_seconds: int = 600

    @classmethod
    def from_env(cls) -> 'SchedulerConfig':
        return cls(
            enabled=_bool(os.getenv("SCHEDULER_ENABLED", "true")),
            grace_period_trigger_interval_seconds=_int(
                os.getenv("GRACE_PERIOD_TRIGGER_INTERVAL_SECONDS", "3600"), 3600
            ),
            campaign_evaluation_interval_seconds=_int(
                os.getenv("CAMPAIGN_EVALUATION_INTERVAL_SECONDS", "3600"), 3600
            ),
            payment_retry_interval_seconds=_int(
                os.getenv("PAYMENT_RETRY_INTERVAL_SECONDS", "3600"), 3600
            ),
            payment_collection_interval_seconds=_int(
                os.getenv("PAYMENT_COLLECTION_INTERVAL_SECONDS", "600"), 600
            ),
        )


# ===========================================
# Main configuration
# ===========================================

@dataclass
class GroupBuyConfig:
    """Main group-buy configuration with all sub-configs"""

    # Environment
    environment: str = "development"
    debug: bool = False

    # Service settings
    service_name: str = "group_buy_service"
    default_host: str = "0.0.0.0"
    default_port: int = 8260

    # Sub-configurations
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infrastructure: InfraConfig = field(default_factory=InfraConfig)
    services: ServiceConfig = field(default_factory=ServiceConfig)
    campaigns: CampaignRulesConfig = field(default_factory=CampaignRulesConfig)
    payments: PaymentRetryConfig = field(default_factory=PaymentRetryConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @classmethod
    def from_env(cls) -> 'GroupBuyConfig':
        """Load complete configuration from environment"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            environment=env,
            debug=_bool(os.getenv("DEBUG", "true" if env == "development" else "false")),

            service_name=os.getenv("SERVICE_NAME", "group_buy_service"),
            default_host=os.getenv("HOST", "0.0.0.0"),
            default_port=_int(os.getenv("SERVICE_PORT") or os.getenv("PORT", "8260"), 8260),

            logging=LoggingConfig.from_env(),
            infrastructure=InfraConfig.from_env(),
            services=ServiceConfig.from_env(),
            campaigns=CampaignRulesConfig.from_env(),
            payments=PaymentRetryConfig.from_env(),
            scheduler=SchedulerConfig.from_env(),
        )
