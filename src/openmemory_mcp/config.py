# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Configuration for the OpenMemory MCP service.

Each backend gets its own settings group with an ``MCP_<GROUP>_`` environment
prefix. ``Settings`` aggregates them; ``get_settings()`` builds a fresh copy
so that tests and embedded callers never share mutable module state.

The FalkorDB entity graph is off unless ``MCP_FALKORDB_ENABLED=true``. With it
off the server runs on the record store and vector index alone: graph steps
are skipped and ``list_entities`` returns empty lists. Deployments that want
entity extraction set the flag and point ``MCP_FALKORDB_HOST`` at a server.
"""

import getpass
import os
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models.validators import validate_tool_prefix

DEFAULT_BASE_DIR = Path(os.getenv("MCP_BASE_DIR", Path.home() / ".openmemory"))


def _default_user_id() -> str:
    """The original deployment keys memories by the host ``$USER``."""
    try:
        return os.getenv("USER") or getpass.getuser() or "default"
    except (KeyError, OSError):
        return "default"


class QdrantSettings(BaseSettings):
    """Vector index (Qdrant) settings."""

    model_config = SettingsConfigDict(env_prefix="MCP_QDRANT_", extra="ignore")

    url: str | None = Field(default=None, description="Server URL, e.g. http://localhost:6333")
    storage_path: str | None = Field(default=None, description="Embedded-mode storage directory")
    location: str | None = Field(default=None, description="Special location, e.g. ':memory:'")
    collection_name: str = "openmemory"
    distance_metric: Literal["Cosine", "Dot", "Euclid"] = "Cosine"
    embedding_model: str = "all-MiniLM-L6-v2"
    timeout_seconds: int = Field(default=30, ge=1, le=600)

    @model_validator(mode="after")
    def default_to_embedded(self) -> "QdrantSettings":
        if not self.url and not self.storage_path and not self.location:
            self.storage_path = str(DEFAULT_BASE_DIR / "qdrant")
        return self


class FalkorDBSettings(BaseSettings):
    """Entity graph (FalkorDB) settings. Disabled unless explicitly enabled."""

    model_config = SettingsConfigDict(env_prefix="MCP_FALKORDB_", extra="ignore")

    enabled: bool = False
    host: str = "localhost"
    port: int = Field(default=6379, ge=1, le=65535)
    password: SecretStr | None = None
    graph_name: str = "openmemory_graph"
    max_connections: int = Field(default=16, ge=1, le=256)


class RecordStoreSettings(BaseSettings):
    """Durable memory record store (SQLite) settings."""

    model_config = SettingsConfigDict(env_prefix="MCP_RECORDS_", extra="ignore")

    database_path: str = str(DEFAULT_BASE_DIR / "openmemory.db")
    busy_timeout_seconds: float = Field(default=5.0, gt=0.0, le=120.0)
    page_size: int = Field(default=100, ge=1, le=1000)


class ExtractionSettings(BaseSettings):
    """Entity/relationship extraction settings."""

    model_config = SettingsConfigDict(env_prefix="MCP_EXTRACTION_", extra="ignore")

    backend: Literal["spacy", "keyword"] = "spacy"
    spacy_model: str = "en_core_web_sm"
    max_entities: int = Field(default=16, ge=1, le=128)


class EngineSettings(BaseSettings):
    """Consistency engine settings."""

    model_config = SettingsConfigDict(env_prefix="MCP_ENGINE_", extra="ignore")

    delete_batch_size: int = Field(default=100, ge=1, le=5000)
    audit_log_size: int = Field(default=10_000, ge=0)
    default_search_k: int = Field(default=10, ge=1, le=100)


class ServerSettings(BaseSettings):
    """MCP front end settings."""

    model_config = SettingsConfigDict(env_prefix="MCP_SERVER_", extra="ignore")

    name: str = "openmemory-mcp-server"
    host: str = "0.0.0.0"
    port: int = Field(default=8765, ge=1, le=65535)
    transport: Literal["http", "sse", "stdio"] = "http"
    tool_prefix: str = "openmemory_"
    default_user_id: str = Field(default_factory=_default_user_id)
    scope_by_client: bool = False
    session_idle_ttl_seconds: float = Field(default=3600.0, gt=0.0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    @field_validator("tool_prefix")
    @classmethod
    def check_prefix(cls, v: str) -> str:
        return validate_tool_prefix(v)


class Settings(BaseSettings):
    """Aggregate settings for the whole service."""

    model_config = SettingsConfigDict(extra="ignore")

    qdrant: QdrantSettings = Field(default_factory=QdrantSettings)
    falkordb: FalkorDBSettings = Field(default_factory=FalkorDBSettings)
    records: RecordStoreSettings = Field(default_factory=RecordStoreSettings)
    extraction: ExtractionSettings = Field(default_factory=ExtractionSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()
