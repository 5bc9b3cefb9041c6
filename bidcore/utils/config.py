"""Configuration management for the bid analysis pipeline."""

import logging
import os
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_FALSE_VALUES = ("0", "false", "no", "off")


@dataclass
class ProviderConfig:
    """Model provider (AWS Bedrock) connection settings."""
    timeout: int
    connect_timeout: int
    max_retries: int
    backoff_base: float


@dataclass
class ModelProfile:
    """
    One entry of the model roster.

    Attributes:
        model_id: Bedrock model or inference profile identifier
        vendor: Vendor name, used by the ENABLE_<VENDOR> switches
        specialization: Short description of what the model is good at
        task_scores: Routing score per task type (0.0 to 1.0)
        strengths: Strength labels reported in agreement summaries
        weaknesses: Weakness labels reported in agreement summaries
        response_format_hint: Send the JSON response-format hint to this model
        enabled: Whether the model takes part in consensus rounds
    """
    model_id: str
    vendor: str
    specialization: str
    task_scores: Dict[str, float] = field(default_factory=dict)
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    response_format_hint: bool = True
    enabled: bool = True

    def score_for(self, task_type: str) -> float:
        return float(self.task_scores.get(task_type, 0.0))


@dataclass
class ConsensusConfig:
    """Consensus round and merge settings."""
    max_models: int = 5
    min_successful_models: int = 2
    model_timeout: float = 60.0
    max_tokens: int = 4000
    temperature: float = 0.2
    numeric_tolerance: float = 0.15
    similarity_threshold: float = 0.6
    strong_similarity: float = 0.85
    iou_threshold: float = 0.3
    location_overlap: float = 0.5
    min_support_ratio: float = 0.3
    disagreement_penalty: float = 0.5


@dataclass
class InvoiceConfig:
    """Invoice/bid text extraction settings."""
    model_id: str
    temperature: float = 0.1
    max_tokens: int = 4000
    min_text_length: int = 50


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str
    format: str
    file: Optional[str]


@dataclass
class Config:
    """Main configuration class."""
    aws_region: str
    provider: ProviderConfig
    models: List[ModelProfile]
    consensus: ConsensusConfig
    invoice: InvoiceConfig
    logging: LoggingConfig

    @classmethod
    def load(cls, config_path: str = "config.yaml") -> "Config":
        """
        Load configuration from file and environment variables.

        Environment variables override config file values:
        - AWS_REGION
        - LOG_LEVEL
        - CONSENSUS_MAX_MODELS
        - CONSENSUS_MODEL_TIMEOUT
        - INVOICE_MODEL_ID
        - ENABLE_<VENDOR> (e.g. ENABLE_META=false drops Meta models)

        Args:
            config_path: Path to YAML configuration file

        Returns:
            Config instance with loaded settings
        """
        if not Path(config_path).exists():
            raise ConfigurationError.missing(config_path)

        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}

        try:
            aws_data = config_data["aws"]
            aws_region = os.getenv("AWS_REGION", aws_data["region"])

            provider_config = ProviderConfig(
                timeout=int(aws_data["bedrock"]["timeout"]),
                connect_timeout=int(aws_data["bedrock"].get("connect_timeout", 10)),
                max_retries=int(aws_data["bedrock"]["max_retries"]),
                backoff_base=float(aws_data["bedrock"].get("backoff_base", 1.0)),
            )

            models = [cls._load_model(entry) for entry in config_data["models"]]

            consensus_data = dict(config_data.get("consensus", {}) or {})
            consensus_config = ConsensusConfig(**consensus_data)
            consensus_config.max_models = int(
                os.getenv("CONSENSUS_MAX_MODELS", consensus_config.max_models)
            )
            consensus_config.model_timeout = float(
                os.getenv("CONSENSUS_MODEL_TIMEOUT", consensus_config.model_timeout)
            )

            invoice_data = dict(config_data["invoice"])
            invoice_data["model_id"] = os.getenv("INVOICE_MODEL_ID", invoice_data["model_id"])
            invoice_config = InvoiceConfig(**invoice_data)

            logging_config = LoggingConfig(
                level=os.getenv("LOG_LEVEL", config_data["logging"]["level"]),
                format=config_data["logging"]["format"],
                file=config_data["logging"].get("file")
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError.invalid(f"{type(e).__name__}: {str(e)}", {"path": config_path})

        config = cls(
            aws_region=aws_region,
            provider=provider_config,
            models=models,
            consensus=consensus_config,
            invoice=invoice_config,
            logging=logging_config,
        )
        config.validate()
        return config

    @staticmethod
    def _load_model(entry: Dict) -> ModelProfile:
        vendor = entry["vendor"]
        enabled = bool(entry.get("enabled", True))
        switch = os.getenv(f"ENABLE_{vendor.upper()}")
        if switch is not None:
            enabled = enabled and switch.strip().lower() not in _FALSE_VALUES

        return ModelProfile(
            model_id=entry["model_id"],
            vendor=vendor,
            specialization=entry.get("specialization", "general"),
            task_scores={k: float(v) for k, v in (entry.get("task_scores") or {}).items()},
            strengths=list(entry.get("strengths") or []),
            weaknesses=list(entry.get("weaknesses") or []),
            response_format_hint=bool(entry.get("response_format_hint", True)),
            enabled=enabled,
        )

    @property
    def enabled_models(self) -> List[ModelProfile]:
        return [m for m in self.models if m.enabled]

    def validate(self) -> None:
        """Reject settings that would make every consensus round fail."""
        required = self.consensus.min_successful_models
        if required < 1:
            raise ConfigurationError.invalid("min_successful_models must be at least 1")
        if self.consensus.max_models < required:
            raise ConfigurationError.invalid(
                f"max_models ({self.consensus.max_models}) is below min_successful_models ({required})"
            )
        if len(self.enabled_models) < required:
            raise ConfigurationError.invalid(
                f"only {len(self.enabled_models)} models enabled, {required} required",
                {"enabled": [m.model_id for m in self.enabled_models]}
            )
        if len(self.enabled_models) < self.consensus.max_models:
            logger.warning(
                f"Only {len(self.enabled_models)} models enabled; consensus rounds will use fewer than "
                f"max_models={self.consensus.max_models}"
            )

    def select_models(self, task_type: str, limit: Optional[int] = None) -> List[ModelProfile]:
        """
        Pick the roster for a consensus round.

        Enabled models are ranked by their score for the task (highest first,
        roster order on ties) and the top ``limit`` (default max_models) kept.
        """
        limit = limit or self.consensus.max_models
        ranked = sorted(
            enumerate(self.enabled_models),
            key=lambda pair: (-pair[1].score_for(task_type), pair[0])
        )
        return [profile for _, profile in ranked[:limit]]

    def get_model(self, model_id: str) -> Optional[ModelProfile]:
        return next((m for m in self.models if m.model_id == model_id), None)
