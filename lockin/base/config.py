# The MIT License (MIT)
# Copyright © 2025 Lock-In Responsible

# Permission is hereby granted, free of charge, to any person obtaining a copy of this software and associated
# documentation files (the “Software”), to deal in the Software without restriction, including without limitation
# the rights to use, copy, modify, merge, publish, distribute, sublicense, and/or sell copies of the Software,
# and to permit persons to whom the Software is furnished to do so, subject to the following conditions:

# The above copyright notice and this permission notice shall be included in all copies or substantial portions of
# the Software.

# THE SOFTWARE IS PROVIDED “AS IS”, WITHOUT WARRANTY OF ANY KIND, EXPRESS OR IMPLIED, INCLUDING BUT NOT LIMITED TO
# THE WARRANTIES OF MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL
# THE AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN ACTION
# OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER
# DEALINGS IN THE SOFTWARE.

"""Validator configuration: CLI flags, LOCKIN_* environment overrides, .env.

Environment variables take precedence over CLI flags. Nested keys use a
double underscore, e.g. ``LOCKIN_MODEL__NAME`` for ``--model.name``.
"""

from __future__ import annotations

import argparse
import os
from typing import Any, Mapping

from pydantic import BaseModel, Field, field_validator, model_validator

ENV_PREFIX = "LOCKIN_"

# Matches HTTPRegistryClient's default backoff_base.
REGISTRY_BACKOFF_BASE = 1.0


class ValidatorConfig(BaseModel):
    """Everything a validator node needs, externally supplied."""

    wallet_name: str = "default"
    wallet_hotkey: str = "default"

    registry_url: str = ""
    registry_timeout: float = 30.0
    registry_max_retries: int = 3

    gateways: list[str] = Field(default_factory=lambda: ["https://ipfs.io"])
    gateway_timeout: float = 30.0
    ipfs_api_url: str | None = None
    web3_storage_token: str | None = None
    pinata_jwt: str | None = None
    allow_mock_upload: bool = False

    model_provider: str = "ollama"
    model_url: str = "http://localhost:11434"
    model_name: str = "llama3.2:3b"
    model_api_key: str | None = None
    model_temperature: float = 0.3
    model_top_p: float = 0.9
    model_timeout: float = 60.0

    poll_interval: float = 30.0
    health_interval: float = 300.0
    num_workers: int = 4
    queue_size: int = 64
    shutdown_grace: float = 5.0

    fetch_timeout: float = 120.0
    adjudicate_timeout: float = 90.0
    upload_timeout: float = 120.0
    vote_timeout: float = 120.0

    health_host: str = "0.0.0.0"
    health_port: int = 3001

    @field_validator("gateways", mode="before")
    @classmethod
    def _split_gateways(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [g.strip() for g in v.split(",") if g.strip()]
        return v

    @field_validator("model_provider")
    @classmethod
    def _provider(cls, v: str) -> str:
        if v not in ("ollama", "openai"):
            raise ValueError(f"unknown model provider: {v}")
        return v

    @model_validator(mode="after")
    def _stage_bounds_cover_client_budgets(self) -> "ValidatorConfig":
        """A stage timeout must outlast the retries and fallbacks running inside it."""
        problems = []
        if self.fetch_timeout < self.fetch_budget():
            problems.append(f"timeouts.fetch={self.fetch_timeout} < {self.fetch_budget()} needed to try every gateway and the registry")
        if self.adjudicate_timeout < self.model_timeout:
            problems.append(f"timeouts.adjudicate={self.adjudicate_timeout} < model.timeout={self.model_timeout}")
        if self.upload_timeout < self.upload_budget():
            problems.append(f"timeouts.upload={self.upload_timeout} < {self.upload_budget()} needed to try every upload backend")
        if self.vote_timeout < self.registry_budget():
            problems.append(f"timeouts.vote={self.vote_timeout} < {self.registry_budget()} needed for registry retries")
        if problems:
            raise ValueError("; ".join(problems))
        return self

    def registry_budget(self) -> float:
        """Worst case for one registry call: every attempt times out, plus backoff."""
        retries = max(1, self.registry_max_retries)
        backoff = sum(REGISTRY_BACKOFF_BASE * (2 ** i) for i in range(retries - 1))
        return self.registry_timeout * retries + backoff

    def fetch_budget(self) -> float:
        return max(self.gateway_timeout * len(self.gateways), self.registry_budget())

    def upload_budget(self) -> float:
        backends = sum(1 for v in (self.ipfs_api_url, self.web3_storage_token, self.pinata_jwt) if v)
        return self.gateway_timeout * backends

    def missing_required(self) -> list[str]:
        missing = []
        if not self.registry_url:
            missing.append("LOCKIN_REGISTRY__URL")
        if not self.gateways:
            missing.append("LOCKIN_STORE__GATEWAYS")
        return missing


# (config field, CLI dest, env var) for every externally supplied setting.
_SETTINGS: tuple[tuple[str, str, str], ...] = (
    ("wallet_name", "wallet.name", "LOCKIN_WALLET__NAME"),
    ("wallet_hotkey", "wallet.hotkey", "LOCKIN_WALLET__HOTKEY"),
    ("registry_url", "registry.url", "LOCKIN_REGISTRY__URL"),
    ("registry_timeout", "registry.timeout", "LOCKIN_REGISTRY__TIMEOUT"),
    ("registry_max_retries", "registry.max_retries", "LOCKIN_REGISTRY__MAX_RETRIES"),
    ("gateways", "store.gateways", "LOCKIN_STORE__GATEWAYS"),
    ("gateway_timeout", "store.timeout", "LOCKIN_STORE__TIMEOUT"),
    ("ipfs_api_url", "store.ipfs_api_url", "LOCKIN_STORE__IPFS_API_URL"),
    ("web3_storage_token", "store.web3_storage_token", "LOCKIN_STORE__WEB3_STORAGE_TOKEN"),
    ("pinata_jwt", "store.pinata_jwt", "LOCKIN_STORE__PINATA_JWT"),
    ("allow_mock_upload", "store.allow_mock_upload", "LOCKIN_STORE__ALLOW_MOCK_UPLOAD"),
    ("model_provider", "model.provider", "LOCKIN_MODEL__PROVIDER"),
    ("model_url", "model.url", "LOCKIN_MODEL__URL"),
    ("model_name", "model.name", "LOCKIN_MODEL__NAME"),
    ("model_api_key", "model.api_key", "LOCKIN_MODEL__API_KEY"),
    ("model_temperature", "model.temperature", "LOCKIN_MODEL__TEMPERATURE"),
    ("model_top_p", "model.top_p", "LOCKIN_MODEL__TOP_P"),
    ("model_timeout", "model.timeout", "LOCKIN_MODEL__TIMEOUT"),
    ("poll_interval", "validator.poll_interval", "LOCKIN_VALIDATOR__POLL_INTERVAL"),
    ("health_interval", "validator.health_interval", "LOCKIN_VALIDATOR__HEALTH_INTERVAL"),
    ("num_workers", "validator.num_workers", "LOCKIN_VALIDATOR__NUM_WORKERS"),
    ("queue_size", "validator.queue_size", "LOCKIN_VALIDATOR__QUEUE_SIZE"),
    ("shutdown_grace", "validator.shutdown_grace", "LOCKIN_VALIDATOR__SHUTDOWN_GRACE"),
    ("fetch_timeout", "timeouts.fetch", "LOCKIN_TIMEOUTS__FETCH"),
    ("adjudicate_timeout", "timeouts.adjudicate", "LOCKIN_TIMEOUTS__ADJUDICATE"),
    ("upload_timeout", "timeouts.upload", "LOCKIN_TIMEOUTS__UPLOAD"),
    ("vote_timeout", "timeouts.vote", "LOCKIN_TIMEOUTS__VOTE"),
    ("health_host", "health.host", "LOCKIN_HEALTH__HOST"),
    ("health_port", "health.port", "LOCKIN_HEALTH__PORT"),
)


def add_validator_args(parser: argparse.ArgumentParser) -> None:
    """Adds validator arguments to the parser. Defaults come from ValidatorConfig."""
    defaults = ValidatorConfig()
    for field_name, dest, env in _SETTINGS:
        if dest.startswith("wallet."):
            continue  # provided by bt.Wallet.add_args
        default = getattr(defaults, field_name)
        if isinstance(default, bool):
            parser.add_argument(f"--{dest}", dest=dest, action="store_true", default=None,
                                help=f"(env: {env})")
        else:
            parser.add_argument(f"--{dest}", dest=dest, type=str, default=None,
                                help=f"Default: {default!r} (env: {env})")


_BOOL_FIELDS = {"allow_mock_upload"}


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(
    args: argparse.Namespace | None = None,
    env: Mapping[str, str] | None = None,
) -> ValidatorConfig:
    """Merge CLI args and environment (env wins) into a ValidatorConfig."""
    env = os.environ if env is None else env
    values: dict[str, Any] = {}

    for field_name, dest, env_name in _SETTINGS:
        cli_value = getattr(args, dest, None) if args is not None else None
        if cli_value is not None:
            values[field_name] = cli_value
        env_value = env.get(env_name)
        if env_value:
            values[field_name] = _env_bool(env_value) if field_name in _BOOL_FIELDS else env_value

    return ValidatorConfig(**values)


__all__ = ["ENV_PREFIX", "REGISTRY_BACKOFF_BASE", "ValidatorConfig", "add_validator_args", "load_config"]
