"""Manifest loader — parse and validate bastion.yaml, then apply env overrides."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

import yaml

from contracts.manifest import Manifest

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_PATH = "./bastion.yaml"

_TRUTHY = {"1", "true", "yes", "on"}


def manifest_path_from_env(environ: Mapping[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    return env.get("BASTION_MANIFEST", DEFAULT_MANIFEST_PATH)


def load_manifest(path: str, environ: Mapping[str, str] | None = None) -> Manifest:
    """Load a bastion.yaml file and return a validated Manifest.

    ``BASTION_USE_DOCKER``, ``BASTION_DOCKER_IMAGE`` and
    ``BASTION_WORKSPACE_PATH`` override the ``sandbox`` section.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Manifest not found: {path}")

    raw = p.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    if not isinstance(data, dict):
        raise ValueError(f"Manifest must be a YAML mapping, got {type(data).__name__}")

    manifest = Manifest(**data)
    return apply_env_overrides(manifest, environ)


def apply_env_overrides(manifest: Manifest, environ: Mapping[str, str] | None = None) -> Manifest:
    env = os.environ if environ is None else environ
    updates: dict[str, object] = {}

    if "BASTION_USE_DOCKER" in env:
        updates["use_docker"] = env["BASTION_USE_DOCKER"].strip().lower() in _TRUTHY
    if env.get("BASTION_DOCKER_IMAGE"):
        updates["docker_image"] = env["BASTION_DOCKER_IMAGE"]
    if env.get("BASTION_WORKSPACE_PATH"):
        updates["workspace_path"] = env["BASTION_WORKSPACE_PATH"]

    if not updates:
        return manifest
    logger.info("Sandbox settings overridden from environment: %s", sorted(updates))
    sandbox = manifest.sandbox.model_copy(update=updates)
    return manifest.model_copy(update={"sandbox": sandbox})
