"""
Configuration loading and merging.

Defaults live in defaults.yaml next to this module and reference environment
variables through OmegaConf's ``oc.env`` resolver. Overrides are merged onto
the defaults in struct mode, so a misspelled key fails loudly instead of being
ignored, and the resolved tree is validated into typed pydantic settings.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf
from pydantic import BaseModel

CONFIG_PATH = Path(__file__).resolve().parent / "defaults.yaml"

DEFAULT_ARTIFACT_TTL_SECONDS = 7200


class AppSection(BaseModel):
    environment: str = "development"
    title: str = "Project Export API"
    version: str = "0.1.0"
    public_base_url: str = "http://localhost:8000"
    cors_origins: List[str] = ["*"]


class CacheSettings(BaseModel):
    backend: Literal["memory", "redis"] = "memory"
    redis_url: str = ""
    key_prefix: str = "project-service"
    compression_enabled: bool = True
    compression_threshold: int = 1024
    metrics_enabled: bool = True
    default_ttl_seconds: int = 300
    max_connections: int = 20
    scan_count: int = 100
    ttl_profiles: Dict[str, int] = {"development": 300, "production": 7200, "test": 30}


class ExportSettings(BaseModel):
    max_concurrent_exports: int = 5
    lock_ttl_seconds: int = 600
    status_ttl_seconds: int = 3600
    result_ttl_seconds: int = 7200
    artifact_ttl_seconds: int = DEFAULT_ARTIFACT_TTL_SECONDS
    max_export_size_mb: int = 100
    retrieval_timeout_seconds: float = 30
    conversion_timeout_seconds: float = 120
    upload_timeout_seconds: float = 60
    stale_after_minutes: int = 5
    degraded_capacity_ratio: float = 0.8
    async_complexities: List[str] = ["high"]
    shutdown_grace_seconds: float = 30


class FileServiceSettings(BaseModel):
    base_url: str = "http://localhost:3001"
    timeout_seconds: float = 10
    max_parallel: int = 5
    service_token: str = ""


class PdfSettings(BaseModel):
    pandoc_path: str = "pandoc"
    pdf_engine: str = "pdflatex"


class StorageSettings(BaseModel):
    backend: Literal["local", "s3"] = "local"
    s3_bucket_name: str = ""
    url_expiry_hours: int = 24
    local_root: str = "exports"
    signing_secret: str = ""
    cleanup_interval_seconds: float = 300


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class AppSettings(BaseModel):
    app: AppSection = AppSection()
    cache: CacheSettings = CacheSettings()
    export: ExportSettings = ExportSettings()
    file_service: FileServiceSettings = FileServiceSettings()
    pdf: PdfSettings = PdfSettings()
    storage: StorageSettings = StorageSettings()
    logging: LoggingSettings = LoggingSettings()


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def make_runtime_config(overrides: Dict[str, Any]) -> DictConfig:
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    override_config = OmegaConf.create(overrides)
    merged = DictConfig(OmegaConf.merge(base, override_config))
    return merged


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> AppSettings:
    """
    Build validated settings from defaults, the environment and ``overrides``.

    Args:
        overrides: Nested mapping merged onto defaults.yaml, e.g.
            ``{"export": {"max_concurrent_exports": 2}}``

    Returns:
        AppSettings with every interpolation resolved

    Raises:
        omegaconf.errors.ConfigKeyError: If an override names an unknown key
        pydantic.ValidationError: If a resolved value has the wrong type
    """
    load_dotenv()
    resolved: Dict[str, Any] = OmegaConf.to_container(  # type: ignore[assignment]
        make_runtime_config(overrides or {}), resolve=True, enum_to_str=True
    )

    export_section = resolved.setdefault("export", {})
    if export_section.get("artifact_ttl_seconds") is None:
        environment = resolved.get("app", {}).get("environment", "development")
        profiles = resolved.get("cache", {}).get("ttl_profiles", {})
        export_section["artifact_ttl_seconds"] = profiles.get(environment, DEFAULT_ARTIFACT_TTL_SECONDS)

    return AppSettings.model_validate(resolved)


def configure_logging(settings: LoggingSettings) -> None:
    logging.basicConfig(level=settings.level.upper(), format=settings.format)
