"""Abstract base class for all source adapters, plus pipeline configuration."""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from pulsedata.config.secrets import MissingAPIKeyError, get_credential
from pulsedata.ingest.http_client import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MIN_INTERVAL_MS,
    REQUEST_TIMEOUT,
    RateLimitedClient,
    UpstreamError,
)
from pulsedata.pipeline.normalize import RecordSchema, apply_schema, normalize

logger = logging.getLogger(__name__)

_REPO_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Defaults (can be overridden by config/pipeline.yaml)
DEFAULT_BASELINE_DATE = "2023-10-07"
DEFAULT_DATA_DIR = "public/data"
DEFAULT_META_DIR = "runs/_meta"
DEFAULT_RECENT_DAYS = 30
DEFAULT_STALE_AFTER_HOURS = 6

STATUS_OK = "ok"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


def _load_yaml(relative_path: str) -> Dict[str, Any]:
    """Load a YAML file from the working directory or the repo root."""
    config_paths = [
        relative_path,
        os.path.join(_REPO_ROOT, relative_path),
    ]

    for path in config_paths:
        if os.path.exists(path):
            try:
                with open(path, 'r') as f:
                    return yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load config from {path}: {e}")

    return {}


def load_pipeline_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load pipeline guardrails from config/pipeline.yaml, filled with defaults.

    Returns:
        Config dict; every documented key is present
    """
    if path is not None:
        with open(path, 'r') as f:
            raw = yaml.safe_load(f) or {}
    else:
        raw = _load_yaml("config/pipeline.yaml")

    rate_limit = raw.get('rate_limit') or {}
    retry = raw.get('retry') or {}
    timeout = raw.get('request_timeout', REQUEST_TIMEOUT)
    if isinstance(timeout, list):
        timeout = tuple(timeout)

    return {
        'data_dir': os.environ.get('PULSEDATA_DATA_DIR') or raw.get('data_dir', DEFAULT_DATA_DIR),
        'meta_dir': raw.get('meta_dir', DEFAULT_META_DIR),
        'recent_days': raw.get('recent_days', DEFAULT_RECENT_DAYS),
        'stale_after_hours': raw.get('stale_after_hours', DEFAULT_STALE_AFTER_HOURS),
        'min_interval_ms': rate_limit.get('min_interval_ms', DEFAULT_MIN_INTERVAL_MS),
        'max_attempts': retry.get('max_attempts', DEFAULT_MAX_ATTEMPTS),
        'request_timeout': timeout,
    }


def load_sources_config(path: Optional[str] = None) -> List[Dict[str, Any]]:
    """Load the list of upstream sources from config/sources.yaml."""
    if path is not None:
        with open(path, 'r') as f:
            raw = yaml.safe_load(f) or {}
    else:
        raw = _load_yaml("config/sources.yaml")
    return raw.get('sources', [])


class AdapterSkipped(Exception):
    """A dataset cannot be fetched for a benign reason, such as a missing credential."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source}: {reason}")


@dataclass
class AdapterResult:
    """Tagged outcome of fetching one dataset."""
    source: str
    dataset: str
    status: str = STATUS_OK  # ok, skipped, failed
    records: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


class SourceAdapter(ABC):
    """
    Abstract base for one upstream API.

    Subclasses implement ``_fetch_impl`` (raw, adapter-shaped rows carrying a
    ``date``) and ``schema_for`` (the explicit field set of each dataset).
    Each adapter owns its own ``RateLimitedClient`` unless one is injected.
    """

    def __init__(
        self,
        source_config: Dict[str, Any],
        client: Optional[RateLimitedClient] = None,
        pipeline_config: Optional[Dict[str, Any]] = None,
    ):
        self.source_id = source_config['id']
        self.name = source_config.get('name', self.source_id)
        self.base_url = source_config.get('base_url', '').rstrip('/')
        self.credential_env = source_config.get('credential_env')
        self.datasets: Dict[str, Dict[str, Any]] = source_config.get('datasets') or {}
        self.config = source_config

        if client is None:
            pipeline_config = pipeline_config or load_pipeline_config()
            client = RateLimitedClient(
                min_interval_ms=source_config.get('min_interval_ms', pipeline_config['min_interval_ms']),
                max_attempts=pipeline_config['max_attempts'],
                timeout=pipeline_config['request_timeout'],
                name=self.source_id,
            )
        self.client = client

    @abstractmethod
    def _fetch_impl(self, dataset: str) -> List[Dict[str, Any]]:
        """
        Internal fetch implementation - to be overridden by subclasses.

        Returns:
            List of raw records, each with a ``date`` key

        Raises:
            UpstreamError, AdapterSkipped, or KeyError/TypeError/ValueError
            on an unexpected payload shape
        """

    @abstractmethod
    def schema_for(self, dataset: str) -> RecordSchema:
        """Input schema of ``dataset``."""

    def dataset_config(self, dataset: str) -> Dict[str, Any]:
        if dataset not in self.datasets:
            raise ValueError(f"{self.source_id} has no dataset {dataset!r}")
        return self.datasets[dataset] or {}

    def baseline_date(self, dataset: str) -> str:
        return str(self.dataset_config(dataset).get('baseline_date', DEFAULT_BASELINE_DATE))

    def url_for(self, dataset: str) -> str:
        return f"{self.base_url}{self.dataset_config(dataset).get('endpoint', '')}"

    def require_credential(self) -> Optional[str]:
        """Return the configured credential, or raise AdapterSkipped when it is missing."""
        if not self.credential_env:
            return None
        try:
            return get_credential(self.credential_env)
        except MissingAPIKeyError:
            raise AdapterSkipped(self.source_id, f"{self.credential_env} not configured")

    def fetch(self, dataset: str) -> AdapterResult:
        """
        Fetch, validate and normalize one dataset.

        Never raises for adapter-level problems: a missing credential yields
        ``skipped`` and an upstream or payload failure yields ``failed``,
        both with no records.
        """
        label = f"{self.source_id}/{dataset}"
        try:
            self.dataset_config(dataset)
            raw = self._fetch_impl(dataset)
            records = normalize(apply_schema(raw, self.schema_for(dataset), label), self.source_id)
        except AdapterSkipped as e:
            logger.warning(f"Skipping {label}: {e.reason}")
            return AdapterResult(self.source_id, dataset, STATUS_SKIPPED, [], e.reason)
        except UpstreamError as e:
            logger.warning(f"Upstream failure for {label}: {e}")
            return AdapterResult(self.source_id, dataset, STATUS_FAILED, [], str(e))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Unexpected payload for {label}: {type(e).__name__}: {e}")
            return AdapterResult(self.source_id, dataset, STATUS_FAILED, [], f"{type(e).__name__}: {e}")

        logger.info(f"Fetched {len(records)} records for {label}")
        return AdapterResult(self.source_id, dataset, STATUS_OK, records)

    def fetch_dataset(self, dataset: str) -> List[Dict[str, Any]]:
        """Normalized records of ``dataset``, or [] on any adapter-level failure."""
        return self.fetch(dataset).records

    def fetch_all(self) -> List[AdapterResult]:
        """Fetch every configured dataset sequentially."""
        return [self.fetch(dataset) for dataset in self.datasets]
