"""
Configuration management and loading.

Handles pipeline settings: tenant event types, bucketing, reconciliation
tolerance, billing rates and logging.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

import yaml

SQLITE_MAX_INTEGER = 2 ** 63 - 1


@dataclass(frozen=True)
class TenantConfig:
    """Per-tenant ingestion rules."""
    allowed_event_types: FrozenSet[str]

    def __post_init__(self):
        """Validate at least one event type is allowed."""
        if not self.allowed_event_types:
            raise ValueError("allowed_event_types cannot be empty")


@dataclass(frozen=True)
class ValidationConfig:
    """Bounds applied by the event validator."""
    max_future_skew_seconds: int = 300
    max_quantity: int = 10 ** 12

    def __post_init__(self):
        if self.max_future_skew_seconds < 0:
            raise ValueError("max_future_skew_seconds must be >= 0")
        # quantities are stored as SQLite INTEGER (signed 64-bit)
        if not 1 <= self.max_quantity <= SQLITE_MAX_INTEGER:
            raise ValueError(f"max_quantity must be between 1 and {SQLITE_MAX_INTEGER}")


@dataclass(frozen=True)
class AggregationConfig:
    """Bucketing, watermark grace and recompute retry policy."""
    bucket_seconds: int = 3600
    grace_period_seconds: int = 48 * 3600
    recompute_interval_seconds: int = 3600
    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.5

    def __post_init__(self):
        """Validate buckets tile a day exactly and retries are sane."""
        if self.bucket_seconds <= 0 or 86400 % self.bucket_seconds != 0:
            raise ValueError("bucket_seconds must be > 0 and divide 86400")
        if self.grace_period_seconds < 0:
            raise ValueError("grace_period_seconds must be >= 0")
        if self.recompute_interval_seconds <= 0:
            raise ValueError("recompute_interval_seconds must be > 0")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        if self.retry_backoff_seconds < 0:
            raise ValueError("retry_backoff_seconds must be >= 0")


@dataclass(frozen=True)
class ReconciliationConfig:
    """Drift tolerance and comparison cadences."""
    tolerance_ratio: float = 0.0001
    count_interval_seconds: int = 3600
    sum_interval_seconds: int = 86400

    def __post_init__(self):
        if not 0 <= self.tolerance_ratio < 1:
            raise ValueError("tolerance_ratio must be in [0, 1)")
        if self.count_interval_seconds <= 0:
            raise ValueError("count_interval_seconds must be > 0")
        if self.sum_interval_seconds <= 0:
            raise ValueError("sum_interval_seconds must be > 0")


@dataclass(frozen=True)
class BillingConfig:
    """Rate card and invoice deadlines."""
    rates: Dict[str, Decimal]
    currency: str = "USD"
    invoice_grace_days: int = 5

    def __post_init__(self):
        """Validate rates are non-negative."""
        for event_type, rate in self.rates.items():
            if rate < 0:
                raise ValueError(f"rate for '{event_type}' must be >= 0")
        if self.invoice_grace_days < 0:
            raise ValueError("invoice_grace_days must be >= 0")
        if not self.currency:
            raise ValueError("currency cannot be empty")


@dataclass(frozen=True)
class RetentionConfig:
    """How long raw events are kept."""
    retention_days: int = 400

    def __post_init__(self):
        if self.retention_days <= 0:
            raise ValueError("retention_days must be > 0")


@dataclass(frozen=True)
class LoggingConfig:
    """Structured logging output."""
    format: str = "console"
    level: str = "INFO"

    def __post_init__(self):
        if self.format not in ("console", "json"):
            raise ValueError("logging format must be 'console' or 'json'")
        if self.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown logging level: {self.level}")


@dataclass(frozen=True)
class PipelineConfig:
    """Complete pipeline configuration."""
    defaults: TenantConfig
    billing: BillingConfig
    tenants: Dict[str, TenantConfig] = field(default_factory=dict)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        priced = set(self.billing.rates)
        for name, tenant in [("defaults", self.defaults)] + sorted(self.tenants.items()):
            unpriced = tenant.allowed_event_types - priced
            if unpriced:
                raise ValueError(f"Event types without a billing rate in {name}: {sorted(unpriced)}")

    def get_tenant_config(self, tenant_id: str) -> TenantConfig:
        """Get configuration for a specific tenant, using defaults if not specified."""
        return self.tenants.get(tenant_id, self.defaults)

    @classmethod
    def default(cls, rates: Optional[Dict[str, Any]] = None, **overrides: Any) -> "PipelineConfig":
        """Build an in-code configuration, mainly for tests.

        Args:
            rates: Mapping of event type to unit price; event types double as
                the default allowed set
            **overrides: Replacement sections (e.g. ``aggregation=...``)
        """
        rates = rates or {"api_call": "0.01"}
        billing = BillingConfig(rates={k: Decimal(str(v)) for k, v in rates.items()})
        defaults = TenantConfig(allowed_event_types=frozenset(rates))
        return cls(defaults=defaults, billing=billing, **overrides)


_SECTION_KEYS = {
    'validation': {'max_future_skew_seconds', 'max_quantity'},
    'aggregation': {
        'bucket_seconds', 'grace_period_seconds', 'recompute_interval_seconds',
        'retry_attempts', 'retry_backoff_seconds',
    },
    'reconciliation': {'tolerance_ratio', 'count_interval_seconds', 'sum_interval_seconds'},
    'retention': {'retention_days'},
    'logging': {'format', 'level'},
}


def load_pipeline_config(path: str) -> PipelineConfig:
    """Load and validate pipeline configuration from YAML file.

    Strict validation ensures no silent misconfiguration can change how
    usage is billed.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated PipelineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Pipeline config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'tenants', 'defaults', 'billing'} | set(_SECTION_KEYS)
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'defaults' not in raw_config:
        raise ValueError("Missing required 'defaults' section")
    defaults = _parse_tenant_config(raw_config['defaults'], "defaults")

    tenants_data = raw_config.get('tenants') or {}
    if not isinstance(tenants_data, dict):
        raise ValueError("'tenants' must be a dictionary")
    tenants = {
        str(tenant_id): _parse_tenant_config(data, f"tenants.{tenant_id}")
        for tenant_id, data in tenants_data.items()
    }

    if 'billing' not in raw_config:
        raise ValueError("Missing required 'billing' section")
    billing = _parse_billing_config(raw_config['billing'])

    sections = {
        name: _parse_section(raw_config.get(name), name)
        for name in _SECTION_KEYS
    }

    return PipelineConfig(
        defaults=defaults,
        billing=billing,
        tenants=tenants,
        validation=ValidationConfig(**sections['validation']),
        aggregation=AggregationConfig(**sections['aggregation']),
        reconciliation=ReconciliationConfig(**sections['reconciliation']),
        retention=RetentionConfig(**sections['retention']),
        logging=LoggingConfig(**sections['logging']),
    )


def _parse_section(data: Optional[Dict], path: str) -> Dict[str, Any]:
    """Check an optional section for unknown keys and return its values."""
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[path]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    return dict(data)


def _parse_tenant_config(data: Any, path: str) -> TenantConfig:
    """Parse and validate a tenant (or defaults) block.

    Args:
        data: Tenant configuration data
        path: Path for error messages

    Returns:
        Validated TenantConfig

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown_keys = set(data.keys()) - {'allowed_event_types'}
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if 'allowed_event_types' not in data:
        raise ValueError(f"Missing required 'allowed_event_types' in {path}")

    event_types = data['allowed_event_types']
    if not isinstance(event_types, list) or not all(isinstance(t, str) for t in event_types):
        raise ValueError(f"'allowed_event_types' in {path} must be a list of strings")

    return TenantConfig(allowed_event_types=frozenset(event_types))


def _parse_billing_config(data: Any) -> BillingConfig:
    """Parse and validate the billing section, keeping rates as Decimal."""
    if not isinstance(data, dict):
        raise ValueError("'billing' must be a dictionary")

    unknown_keys = set(data.keys()) - {'rates', 'currency', 'invoice_grace_days'}
    if unknown_keys:
        raise ValueError(f"Unknown keys in billing: {unknown_keys}")

    if 'rates' not in data:
        raise ValueError("Missing required 'rates' in billing")
    rates_data = data['rates']
    if not isinstance(rates_data, dict) or not rates_data:
        raise ValueError("'rates' in billing must be a non-empty dictionary")

    rates = {}
    for event_type, value in rates_data.items():
        # str() first so floats from YAML keep their written digits
        try:
            rates[str(event_type)] = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Rate for '{event_type}' is not a number: {value!r}")

    kwargs: Dict[str, Any] = {'rates': rates}
    if 'currency' in data:
        kwargs['currency'] = str(data['currency'])
    if 'invoice_grace_days' in data:
        kwargs['invoice_grace_days'] = int(data['invoice_grace_days'])
    return BillingConfig(**kwargs)
