"""
River Configuration

Parses river documents into immutable RiverConfig objects and keeps the set
of provisioned rivers. A river document is provisioned once and is read-only
afterwards; provisioning the same name twice is rejected.

Example document (nested or dotted keys are both accepted):

    {
        "type": "neo4j",
        "neo4j": {"uri": "bolt://localhost:7687", "interval": 1, "batch_size": 100},
        "index": {"name": "bands", "type": "musician"}
    }
"""

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import RiverConfigError

logger = logging.getLogger("neo4j_river.river_config")

RIVER_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")


class RiverConfig(BaseModel):
    """Immutable configuration of one river"""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    source_type: str = "neo4j"

    # Source connection
    source_uri: str
    source_username: Optional[str] = None
    source_password: Optional[str] = Field(None, repr=False)
    source_database: Optional[str] = None
    label: Optional[str] = Field(None, description="Only watch nodes carrying this label")
    id_property: Optional[str] = Field(None, description="Node property used as identifier (default: elementId)")
    timestamp_property: Optional[str] = Field(None, description="Node property holding last modification time")

    # Target index
    index_name: str
    index_type: str = "node"
    refresh: Literal["true", "false", "wait_for"] = "false"

    # Polling
    interval_seconds: float = Field(1.0, gt=0)
    batch_size: int = Field(100, gt=0)

    # Backoff after retryable failures
    backoff_initial_seconds: float = Field(1.0, gt=0)
    backoff_max_seconds: float = Field(60.0, gt=0)
    failure_log_threshold: int = Field(5, ge=1)

    is_active: bool = True

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not RIVER_NAME_PATTERN.match(v):
            raise ValueError(f"invalid river name: {v!r}")
        return v

    @field_validator('index_name')
    @classmethod
    def validate_index_name(cls, v):
        # Elasticsearch index naming rules
        if not v or v != v.lower() or v[0] in "_-+" or re.search(r'[\s\\/*?"<>|,#:]', v):
            raise ValueError(f"invalid index name: {v!r}")
        return v

    @field_validator('label')
    @classmethod
    def validate_label(cls, v):
        if v is not None and (not v or "`" in v):
            raise ValueError(f"invalid label: {v!r}")
        return v

    @classmethod
    def from_document(cls, name: str, document: Dict[str, Any],
                      defaults: Optional[Dict[str, Any]] = None) -> 'RiverConfig':
        """
        Build a RiverConfig from a river document.

        Source settings are read from the `source` section, or from the
        section named after the river type (`neo4j` for Neo4j rivers).
        `defaults` fills source credentials the document omits.

        Raises:
            RiverConfigError: if the document is malformed
        """
        if not isinstance(document, dict):
            raise RiverConfigError(f"River document for {name} must be a JSON object")

        flat = _flatten(document)
        source_type = flat.get("type", "neo4j")
        prefix = "source" if any(k.startswith("source.") for k in flat) else source_type
        defaults = defaults or {}

        def source(key, default=None):
            return flat.get(f"{prefix}.{key}", default)

        fields = {
            "name": name,
            "source_type": source_type,
            "source_uri": source("uri"),
            "source_username": source("user", source("username", defaults.get("username"))),
            "source_password": source("password", defaults.get("password")),
            "source_database": source("database"),
            "label": source("label"),
            "id_property": source("id_property"),
            "timestamp_property": source("timestamp_property"),
            "index_name": flat.get("index.name"),
            "index_type": flat.get("index.type", "node"),
            "refresh": str(flat.get("index.refresh", "false")).lower(),
            "interval_seconds": source("interval", 1.0),
            "batch_size": source("batch_size", flat.get("index.batch_size", 100)),
            "backoff_initial_seconds": source("backoff_initial", 1.0),
            "backoff_max_seconds": source("backoff_max", 60.0),
            "failure_log_threshold": source("failure_log_threshold", 5),
            "is_active": flat.get("active", True),
        }

        try:
            return cls(**fields)
        except ValidationError as e:
            raise RiverConfigError(f"Invalid river document for {name}: {e}") from e


def _flatten(document: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested sections into dotted keys ("index": {"name": x} -> "index.name")"""
    flat = {}
    for key, value in document.items():
        full_key = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{full_key}."))
        else:
            flat[full_key] = value
    return flat


class ConfigManager:
    """Keeps the provisioned river configurations"""

    def __init__(self, rivers_dir: Optional[str] = None, defaults: Optional[Dict[str, Any]] = None):
        self.rivers_dir = Path(rivers_dir) if rivers_dir else None
        self.defaults = defaults or {}
        self._configs: Dict[str, RiverConfig] = {}
        self._invalid_files: Dict[Path, int] = {}  # path -> mtime_ns of the rejected version

    async def initialize(self):
        """Load all river documents from the provisioning directory"""
        if self.rivers_dir is None:
            logger.info("No rivers directory configured - rivers must be provisioned via API")
            return
        self.rivers_dir.mkdir(parents=True, exist_ok=True)
        self._scan_directory()

    async def close(self):
        pass

    def _scan_directory(self) -> List[str]:
        """
        Load documents not seen before; returns names of files currently present.
        A rejected document is read again once it is modified or replaced.
        """
        present = []
        paths = sorted(self.rivers_dir.glob("*.json"))
        for path in paths:
            present.append(path.stem)
            if path.stem in self._configs:
                continue
            mtime = path.stat().st_mtime_ns
            if self._invalid_files.get(path) == mtime:
                continue
            try:
                document = json.loads(path.read_text(encoding="utf-8"))
                config = RiverConfig.from_document(path.stem, document, self.defaults)
            except (json.JSONDecodeError, RiverConfigError) as e:
                logger.error(f"Skipping river document {path}: {e}")
                self._invalid_files[path] = mtime
                continue
            self._invalid_files.pop(path, None)
            self._configs[path.stem] = config
            logger.info(f"Loaded river {config.name} -> index {config.index_name}")

        for path in set(self._invalid_files) - set(paths):
            del self._invalid_files[path]
        return present

    async def create_river(self, name: str, document: Dict[str, Any]) -> RiverConfig:
        """
        Provision a new river.

        Raises:
            RiverConfigError: if the document is invalid or the name is taken
        """
        if name in self._configs:
            raise RiverConfigError(f"River {name} already exists")

        config = RiverConfig.from_document(name, document, self.defaults)

        if self.rivers_dir is not None:
            path = self.rivers_dir / f"{name}.json"
            path.write_text(json.dumps(document, indent=2), encoding="utf-8")

        self._configs[name] = config
        logger.info(f"Provisioned river {name} -> index {config.index_name}")
        return config

    async def get_config(self, name: str) -> Optional[RiverConfig]:
        return self._configs.get(name)

    async def get_all_active_configs(self) -> List[RiverConfig]:
        return [c for c in self._configs.values() if c.is_active]

    async def delete_river(self, name: str):
        """Remove a river (hard delete of its document)"""
        self._configs.pop(name, None)
        if self.rivers_dir is not None:
            path = self.rivers_dir / f"{name}.json"
            if path.exists():
                path.unlink()

    async def listen_for_config_changes(self, interval_seconds: float = 30.0) -> AsyncGenerator[Dict, None]:
        """
        Poll the rivers directory for provisioned and removed rivers.
        Yields change events: {operation: 'insert', config} or {operation: 'delete', river_name}.
        """
        known = set()

        while True:
            if self.rivers_dir is not None:
                try:
                    present = set(self._scan_directory())
                    for name in list(self._configs):
                        if name not in present:
                            # Document removed from disk
                            self._configs.pop(name)
                except OSError as e:
                    logger.error(f"Error scanning rivers directory {self.rivers_dir}: {e}")

            current = {c.name for c in await self.get_all_active_configs()}

            for name in sorted(current - known):
                yield {'operation': 'insert', 'config': self._configs[name]}

            for name in sorted(known - current):
                yield {'operation': 'delete', 'river_name': name}

            known = current
            await asyncio.sleep(interval_seconds)
