"""
Configuration management (SSOT).

This module defines ALL configuration for the capture-ledger pipeline.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- The local state DB is the single source of truth; remote settings only
  affect synchronization, never whether a capture is persisted
- Thresholds are in [0, 1]
- Retry budgets are finite (no retry-forever)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import ConfigValidationError

__all__ = [
    "ConfigValidationError",
    "ImagingConfig",
    "OcrConfig",
    "ExtractionConfig",
    "RemoteConfig",
    "SyncConfig",
    "PipelineConfig",
    "Config",
    "load_config",
    "create_default_config",
]


@dataclass
class ImagingConfig:
    """Image normalizer limits and output settings."""

    # Raw capture size limit (bytes)
    max_input_bytes: int = 25 * 1024 * 1024
    # Decoded pixel limit (width * height)
    max_pixels: int = 60_000_000
    # Long edge of the canonical image
    max_dimension: int = 2000
    # Border trim tolerance (0-255 grey levels)
    trim_tolerance: int = 12
    grayscale: bool = True


@dataclass
class OcrConfig:
    """Text-recognition engine settings."""

    # Path to the tesseract binary (None = system default)
    tesseract_cmd: str | None = None
    language: str = "eng"
    # Tesseract page segmentation mode
    psm: int = 6
    # Per-capture recognition timeout (seconds)
    timeout_seconds: float = 20.0
    # Blocks below this confidence are flagged
    low_confidence: float = 0.7


@dataclass
class ExtractionConfig:
    """Generative-AI extraction endpoint (Ollama-compatible chat API).

    SSOT for extraction settings:
    - base_url: Can be localhost, LAN IP, or remote URL
    - auth_header: Optional auth header for proxied deployments
    - max_concurrent: Concurrency limiter for the endpoint
    """

    base_url: str = "http://localhost:11434"
    # Format: "Bearer <token>" or "Header-Name: value"
    auth_header: str | None = None
    model: str = "qwen2.5:7b-instruct-q4_K_M"
    # Request timeout (seconds)
    timeout_seconds: int = 60
    # Maximum concurrent extraction requests
    max_concurrent: int = 2
    # Below this confidence: needs_review
    review_threshold: float = 0.70
    # Weight of OCR mean confidence vs model self-reported confidence
    ocr_weight: float = 0.5
    # Sanity limit for extracted amounts
    max_amount: float = 1_000_000.0

    def is_remote(self) -> bool:
        """Check if the endpoint is remote (not localhost)."""
        url_lower = self.base_url.lower()
        return not any(
            local in url_lower
            for local in ["localhost", "127.0.0.1", "::1", "host.docker.internal"]
        )


@dataclass
class RemoteConfig:
    """Remote document store."""

    base_url: str = "http://localhost:8090"
    token: str = ""
    timeout_seconds: int = 30
    # Transport-level retries for idempotent GETs only
    max_retries: int = 2


@dataclass
class SyncConfig:
    """Sync engine settings."""

    # Max concurrent remote operations across distinct records
    max_concurrent: int = 4
    # Ops taken per drain pass
    batch_size: int = 50
    # Backoff: min(cap, base * 2**(attempt-1)) with full jitter
    backoff_base_seconds: float = 2.0
    backoff_cap_seconds: float = 300.0
    # Consecutive failures before an op is failed_permanent
    max_attempts: int = 6
    # "timestamp" (last-writer-wins on update time) or "revision"
    conflict_policy: str = "timestamp"
    # Background loop poll interval (seconds)
    poll_interval_seconds: float = 15.0
    # Pull remote changes after each push pass
    pull_enabled: bool = True


@dataclass
class PipelineConfig:
    """Pipeline coordinator settings."""

    # Concurrent capture pipelines
    max_workers: int = 2
    # Persist a needs_review record when extraction is degraded
    offline_fallback: bool = True


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    imaging: ImagingConfig = field(default_factory=ImagingConfig)
    ocr: OcrConfig = field(default_factory=OcrConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/records.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.extraction.base_url:
            errors.append("extraction.base_url is required")
        if not self.remote.base_url:
            errors.append("remote.base_url is required")

        if not 0.0 <= self.extraction.review_threshold <= 1.0:
            errors.append("extraction.review_threshold must be within [0, 1]")
        if not 0.0 <= self.extraction.ocr_weight <= 1.0:
            errors.append("extraction.ocr_weight must be within [0, 1]")
        if not 0.0 <= self.ocr.low_confidence <= 1.0:
            errors.append("ocr.low_confidence must be within [0, 1]")

        if self.sync.max_attempts < 1:
            errors.append("sync.max_attempts must be >= 1")
        if self.sync.backoff_cap_seconds < self.sync.backoff_base_seconds:
            errors.append("sync.backoff_cap_seconds must be >= sync.backoff_base_seconds")
        if self.sync.conflict_policy not in ("timestamp", "revision"):
            errors.append("sync.conflict_policy must be 'timestamp' or 'revision'")
        if self.sync.max_concurrent < 1:
            errors.append("sync.max_concurrent must be >= 1")
        if self.pipeline.max_workers < 1:
            errors.append("pipeline.max_workers must be >= 1")

        return errors

    def ensure_valid(self) -> None:
        """Raise ConfigValidationError if validate() reports problems."""
        errors = self.validate()
        if errors:
            raise ConfigValidationError("; ".join(errors))


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name, "")
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - CAPTURE_LEDGER_DB (state DB path)
    - TESSERACT_CMD
    - EXTRACTION_URL
    - EXTRACTION_MODEL
    - EXTRACTION_AUTH_HEADER
    - EXTRACTION_TIMEOUT (request timeout in seconds)
    - REMOTE_URL
    - REMOTE_TOKEN
    - SYNC_CONFLICT_POLICY (timestamp/revision)
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    imaging_data = data.get("imaging", {})
    imaging = ImagingConfig(
        max_input_bytes=imaging_data.get("max_input_bytes", 25 * 1024 * 1024),
        max_pixels=imaging_data.get("max_pixels", 60_000_000),
        max_dimension=imaging_data.get("max_dimension", 2000),
        trim_tolerance=imaging_data.get("trim_tolerance", 12),
        grayscale=imaging_data.get("grayscale", True),
    )

    ocr_data = data.get("ocr", {})
    ocr = OcrConfig(
        tesseract_cmd=os.environ.get("TESSERACT_CMD", ocr_data.get("tesseract_cmd")),
        language=ocr_data.get("language", "eng"),
        psm=ocr_data.get("psm", 6),
        timeout_seconds=ocr_data.get("timeout_seconds", 20.0),
        low_confidence=ocr_data.get("low_confidence", 0.7),
    )

    extraction_data = data.get("extraction", {})
    extraction = ExtractionConfig(
        base_url=os.environ.get(
            "EXTRACTION_URL", extraction_data.get("base_url", "http://localhost:11434")
        ),
        auth_header=os.environ.get("EXTRACTION_AUTH_HEADER", extraction_data.get("auth_header")),
        model=os.environ.get(
            "EXTRACTION_MODEL", extraction_data.get("model", "qwen2.5:7b-instruct-q4_K_M")
        ),
        timeout_seconds=int(
            _env_float("EXTRACTION_TIMEOUT", extraction_data.get("timeout_seconds", 60))
        ),
        max_concurrent=extraction_data.get("max_concurrent", 2),
        review_threshold=extraction_data.get("review_threshold", 0.70),
        ocr_weight=extraction_data.get("ocr_weight", 0.5),
        max_amount=extraction_data.get("max_amount", 1_000_000.0),
    )

    remote_data = data.get("remote", {})
    remote = RemoteConfig(
        base_url=os.environ.get("REMOTE_URL", remote_data.get("base_url", "http://localhost:8090")),
        token=os.environ.get("REMOTE_TOKEN", remote_data.get("token", "")),
        timeout_seconds=remote_data.get("timeout_seconds", 30),
        max_retries=remote_data.get("max_retries", 2),
    )

    sync_data = data.get("sync", {})
    sync = SyncConfig(
        max_concurrent=sync_data.get("max_concurrent", 4),
        batch_size=sync_data.get("batch_size", 50),
        backoff_base_seconds=sync_data.get("backoff_base_seconds", 2.0),
        backoff_cap_seconds=sync_data.get("backoff_cap_seconds", 300.0),
        max_attempts=sync_data.get("max_attempts", 6),
        conflict_policy=os.environ.get(
            "SYNC_CONFLICT_POLICY", sync_data.get("conflict_policy", "timestamp")
        ).lower(),
        poll_interval_seconds=sync_data.get("poll_interval_seconds", 15.0),
        pull_enabled=sync_data.get("pull_enabled", True),
    )

    pipeline_data = data.get("pipeline", {})
    pipeline = PipelineConfig(
        max_workers=pipeline_data.get("max_workers", 2),
        offline_fallback=pipeline_data.get("offline_fallback", True),
    )

    state_db = os.environ.get("CAPTURE_LEDGER_DB", data.get("state_db_path", "data/records.db"))

    return Config(
        imaging=imaging,
        ocr=ocr,
        extraction=extraction,
        remote=remote,
        sync=sync,
        pipeline=pipeline,
        state_db_path=Path(state_db),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# capture-ledger configuration
#
# The local state DB is always written first; the remote store is only
# reached by the sync engine, so captures work fully offline.

imaging:
  max_input_bytes: 26214400                # Reject raw captures above 25 MiB
  max_pixels: 60000000                     # Reject decoded images above this pixel count
  max_dimension: 2000                      # Long edge of the canonical image
  trim_tolerance: 12                       # Border trim tolerance (grey levels)
  grayscale: true

ocr:
  tesseract_cmd: null                      # Path to tesseract (null = system default)
  language: "eng"
  psm: 6                                   # Tesseract page segmentation mode
  timeout_seconds: 20
  low_confidence: 0.7                      # Flag text blocks below this confidence

# Generative-AI extraction (Ollama-compatible chat API)
extraction:
  base_url: "http://localhost:11434"
  auth_header: null                        # Optional auth header for proxied deployments
  model: "qwen2.5:7b-instruct-q4_K_M"
  timeout_seconds: 60
  max_concurrent: 2
  review_threshold: 0.70                   # Below this: needs_review
  ocr_weight: 0.5                          # OCR vs model confidence weight
  max_amount: 1000000.0                    # Sanity check maximum

# Remote document store
remote:
  base_url: "http://localhost:8090"
  token: "YOUR_REMOTE_TOKEN"
  timeout_seconds: 30
  max_retries: 2                           # Transport retries for GET only

sync:
  max_concurrent: 4                        # Parallel ops across distinct records
  batch_size: 50
  backoff_base_seconds: 2.0
  backoff_cap_seconds: 300.0
  max_attempts: 6                          # Then failed_permanent
  conflict_policy: "timestamp"             # timestamp | revision
  poll_interval_seconds: 15
  pull_enabled: true

pipeline:
  max_workers: 2                           # Concurrent capture pipelines
  offline_fallback: true                   # Keep captures as needs_review when AI is degraded

# State database path
state_db_path: "data/records.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
