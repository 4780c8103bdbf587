"""
Configuration management and loading.

Handles plan tiers, credit ratios, generation and quality settings.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_credit_ledger.core.pricing import CreditRatios
from ai_credit_ledger.core.retry import RetryPolicy


@dataclass(frozen=True)
class PlanConfig:
    """Limits and allowance for one plan tier."""
    name: str
    chunk_limit: int
    monthly_credits: int
    accumulate: bool
    monthly_word_cap: Optional[int] = None
    max_prompt_words: Optional[int] = None
    max_output_words: Optional[int] = None

    def __post_init__(self):
        """Validate plan values."""
        if self.chunk_limit <= 0:
            raise ValueError(f"plan '{self.name}': chunk_limit must be > 0")
        if self.monthly_credits < 0:
            raise ValueError(f"plan '{self.name}': monthly_credits cannot be negative")
        if self.monthly_word_cap is not None and self.monthly_word_cap <= 0:
            raise ValueError(f"plan '{self.name}': monthly_word_cap must be > 0")
        for key in ('max_prompt_words', 'max_output_words'):
            value = getattr(self, key)
            if value is not None and value <= 0:
                raise ValueError(f"plan '{self.name}': {key} must be > 0")

    @property
    def is_quota_limited(self) -> bool:
        """Whether monthly word usage is capped for this plan."""
        return self.monthly_word_cap is not None


@dataclass(frozen=True)
class GenerationConfig:
    """Chunk loop and similarity reuse settings."""
    max_refinement_cycles: int = 2
    similarity_threshold: float = 0.8
    max_similarity_results: int = 10
    context_sentences: int = 2
    context_keywords: int = 5
    closing_fraction: float = 0.2
    quality_estimate_factors: Dict[str, float] = field(default_factory=lambda: {
        "standard": 1.0,
        "enhanced": 1.05,
        "premium": 1.1,
    })

    def __post_init__(self):
        """Validate generation bounds."""
        if self.max_refinement_cycles < 0:
            raise ValueError("max_refinement_cycles cannot be negative")
        if not 0 < self.similarity_threshold <= 1:
            raise ValueError("similarity_threshold must be in (0, 1]")
        if self.max_similarity_results <= 0:
            raise ValueError("max_similarity_results must be > 0")
        if not 1 <= self.context_sentences <= 2:
            raise ValueError("context_sentences must be 1 or 2")
        if self.context_keywords <= 0:
            raise ValueError("context_keywords must be > 0")
        if not 0 < self.closing_fraction < 1:
            raise ValueError("closing_fraction must be in (0, 1)")
        for tier, factor in self.quality_estimate_factors.items():
            if factor < 1:
                raise ValueError(f"quality_estimate_factors.{tier} must be >= 1")


@dataclass(frozen=True)
class QualityThresholds:
    """Detection thresholds driving refinement severity."""
    plagiarism_medium: float = 30
    plagiarism_high: float = 50
    ai_medium: float = 70
    ai_high: float = 85
    readability_grade: float = 12

    def __post_init__(self):
        """Validate threshold ordering."""
        if not 0 <= self.plagiarism_medium <= self.plagiarism_high <= 100:
            raise ValueError("plagiarism thresholds must satisfy 0 <= medium <= high <= 100")
        if not 0 <= self.ai_medium <= self.ai_high <= 100:
            raise ValueError("ai thresholds must satisfy 0 <= medium <= high <= 100")
        if self.readability_grade <= 0:
            raise ValueError("readability_grade must be > 0")


@dataclass(frozen=True)
class StoreConfig:
    """Backing store and retry settings."""
    busy_timeout: float = 5.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self):
        if self.busy_timeout < 0:
            raise ValueError("busy_timeout cannot be negative")


DEFAULT_PLANS: Dict[str, PlanConfig] = {
    "freemium": PlanConfig(
        name="freemium", chunk_limit=1000, monthly_credits=200,
        accumulate=False, monthly_word_cap=1000, max_prompt_words=500, max_output_words=1000
    ),
    "pro": PlanConfig(
        name="pro", chunk_limit=2000, monthly_credits=2000, accumulate=True, max_prompt_words=5000
    ),
    "custom": PlanConfig(
        name="custom", chunk_limit=2000, monthly_credits=3300, accumulate=True, max_prompt_words=5000
    ),
}


@dataclass(frozen=True)
class LedgerConfig:
    """Complete configuration."""
    plans: Dict[str, PlanConfig] = field(default_factory=lambda: dict(DEFAULT_PLANS))
    default_plan: str = "freemium"
    credit_ratios: CreditRatios = field(default_factory=CreditRatios)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    quality: QualityThresholds = field(default_factory=QualityThresholds)
    store: StoreConfig = field(default_factory=StoreConfig)

    def __post_init__(self):
        if not self.plans:
            raise ValueError("at least one plan must be configured")
        if self.default_plan not in self.plans:
            raise ValueError(f"default_plan '{self.default_plan}' is not a configured plan")

    def get_plan(self, plan_tier: str) -> PlanConfig:
        """Get configuration for a plan tier, using the default plan if unknown."""
        return self.plans.get((plan_tier or "").lower(), self.plans[self.default_plan])


def default_config() -> LedgerConfig:
    """Built-in configuration used when no file is supplied."""
    return LedgerConfig()


def load_config(path: str) -> LedgerConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfiguration that could
    mis-price or mis-limit a request. Omitted sections take built-in
    defaults; unknown keys anywhere are rejected.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Ledger config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'plans', 'default_plan', 'credit_ratios', 'generation', 'quality', 'store'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    plans = dict(DEFAULT_PLANS)
    if 'plans' in raw_config:
        plans_data = raw_config['plans']
        if not isinstance(plans_data, dict) or not plans_data:
            raise ValueError("'plans' must be a non-empty dictionary")
        plans = {
            str(name).lower(): _parse_plan(str(name).lower(), data)
            for name, data in plans_data.items()
        }

    default_plan = raw_config.get('default_plan', 'freemium')
    if not isinstance(default_plan, str):
        raise ValueError("'default_plan' must be a string")

    credit_ratios = _parse_section(raw_config, 'credit_ratios', CreditRatios, int)
    generation = _parse_section(raw_config, 'generation', GenerationConfig)
    quality = _parse_section(raw_config, 'quality', QualityThresholds, float)
    store = _parse_store(raw_config.get('store', {}))

    return LedgerConfig(
        plans=plans,
        default_plan=default_plan.lower(),
        credit_ratios=credit_ratios,
        generation=generation,
        quality=quality,
        store=store
    )


def _parse_plan(name: str, data: Any) -> PlanConfig:
    """Parse and validate one plan entry.

    Raises:
        ValueError: If the plan is invalid
    """
    path = f"plans.{name}"
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    optional_int_keys = ('monthly_word_cap', 'max_prompt_words', 'max_output_words')
    allowed_keys = {'chunk_limit', 'monthly_credits', 'accumulate', *optional_int_keys}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for required in ('chunk_limit', 'monthly_credits'):
        if required not in data:
            raise ValueError(f"Missing required '{required}' in {path}")
        if not isinstance(data[required], int) or isinstance(data[required], bool):
            raise ValueError(f"'{required}' in {path} must be an integer")

    for key in optional_int_keys:
        value = data.get(key)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
            raise ValueError(f"'{key}' in {path} must be an integer or null")

    accumulate = data.get('accumulate', True)
    if not isinstance(accumulate, bool):
        raise ValueError(f"'accumulate' in {path} must be a boolean")

    return PlanConfig(
        name=name,
        chunk_limit=data['chunk_limit'],
        monthly_credits=data['monthly_credits'],
        accumulate=accumulate,
        monthly_word_cap=data.get('monthly_word_cap'),
        max_prompt_words=data.get('max_prompt_words'),
        max_output_words=data.get('max_output_words')
    )


def _parse_section(raw_config: Dict, key: str, cls, coerce=None):
    """Build a flat dataclass section, rejecting unknown keys."""
    data = raw_config.get(key, {})
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"'{key}' must be a dictionary")

    allowed_keys = {f.name for f in fields(cls)}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {key}: {unknown_keys}")

    values = {}
    for name, value in data.items():
        if coerce is not None:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"'{name}' in {key} must be a number")
            if coerce is int and int(value) != value:
                raise ValueError(f"'{name}' in {key} must be an integer")
            value = coerce(value)
        values[name] = value
    return cls(**values)


def _parse_store(data: Any) -> StoreConfig:
    """Parse the store section, which nests the retry policy."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("'store' must be a dictionary")

    allowed_keys = {'busy_timeout', 'max_attempts', 'backoff_base', 'backoff_max'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in store: {unknown_keys}")

    retry = RetryPolicy(
        max_attempts=int(data.get('max_attempts', 3)),
        backoff_base=float(data.get('backoff_base', 0.1)),
        backoff_max=float(data.get('backoff_max', 2.0))
    )
    return StoreConfig(busy_timeout=float(data.get('busy_timeout', 5.0)), retry=retry)
