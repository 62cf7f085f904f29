from typing import List, Optional, Literal
import json

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RIVER_",
        env_file=".env",
        extra="ignore",
    )

    # Elasticsearch connection (target index)
    elasticsearch_hosts: str = Field("http://localhost:9200", description="JSON list or comma separated host URLs")
    elasticsearch_username: Optional[str] = None
    elasticsearch_password: Optional[str] = None
    elasticsearch_api_key: Optional[str] = None
    elasticsearch_request_timeout: float = Field(30.0, description="Per-request timeout for index writes in seconds")

    @field_validator('elasticsearch_hosts', mode='before')
    @classmethod
    def parse_hosts(cls, v):
        if isinstance(v, (list, tuple)):
            return ",".join(v)
        return v

    @property
    def elasticsearch_host_list(self) -> List[str]:
        value = self.elasticsearch_hosts.strip()
        if value.startswith("["):
            return json.loads(value)
        return [host.strip() for host in value.split(",") if host.strip()]

    # Default Neo4j credentials for river documents that do not carry their own
    neo4j_username: str = "neo4j"
    neo4j_password: Optional[str] = None

    # State store: PostgreSQL URL, or in-memory when unset
    postgres_url: Optional[str] = Field(None, description="asyncpg URL for checkpoint and node ledger storage")

    # River provisioning
    rivers_dir: Optional[str] = Field(None, description="Directory of river JSON documents (one river per file)")
    config_rescan_seconds: float = Field(30.0, description="How often the rivers directory is rescanned for new rivers")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_file: Optional[str] = Field(None, description="Log file path; console only when unset")

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
