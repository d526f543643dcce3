"""Quota-reporting capability backed by the gemini CLI."""

from __future__ import annotations

import json
import os
import subprocess
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = structlog.get_logger(__name__)


class QuotaError(RuntimeError):
    """Base class for quota failures."""


class QuotaFetchError(QuotaError):
    """Raised when a single account's quota cannot be fetched."""


class QuotaBucket(BaseModel):
    """Remaining quota for one model."""

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model_id: str = Field(default="", alias="modelId")
    remaining_fraction: float = Field(default=0.0, alias="remainingFraction")

    @field_validator("model_id", mode="before")
    @classmethod
    def _missing_model(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("remaining_fraction", mode="before")
    @classmethod
    def _missing_fraction(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @field_validator("remaining_fraction")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return min(max(value, 0.0), 1.0)


class _QuotaDump(BaseModel):
    buckets: list[QuotaBucket] = Field(default_factory=list)

    @field_validator("buckets", mode="before")
    @classmethod
    def _missing_buckets(cls, value: Any) -> Any:
        return [] if value is None else value


def extract_json(output: str) -> str | None:
    """Return the first balanced {...} block in output, ignoring noise around it."""
    start = output.find("{")
    if start == -1:
        return None

    depth = 0
    for index in range(start, len(output)):
        ch = output[index]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return output[start : index + 1]
    return None


def parse_quota_output(output: str) -> list[QuotaBucket]:
    """Parse `--dump-quota` output into buckets.

    Raises:
        QuotaFetchError: If no JSON object is present or it does not match the schema
    """
    block = extract_json(output)
    if block is None:
        raise QuotaFetchError("no JSON found in quota output")
    try:
        return _QuotaDump.model_validate(json.loads(block)).buckets
    except (json.JSONDecodeError, ValidationError) as exc:
        raise QuotaFetchError(f"parse quota json: {exc}") from exc


class GeminiQuotaReporter:
    """Runs `gemini --dump-quota` with an account's home directory."""

    def __init__(self, binary: Path, timeout: float = 60.0):
        """Initialize the reporter.

        Args:
            binary: Path to the gemini executable
            timeout: Seconds before the subprocess is abandoned
        """
        self.binary = Path(binary)
        self.timeout = timeout

    def fetch(self, home_dir: Path) -> list[QuotaBucket]:
        """Fetch quota buckets for the account rooted at home_dir.

        Raises:
            QuotaFetchError: If the command fails or its output is unusable
        """
        env = {
            **os.environ,
            "HOME": str(home_dir),
            "GEMINI_CLI_HOME": str(home_dir),
            "GEMINI_FORCE_FILE_STORAGE": "true",
        }
        try:
            result = subprocess.run(
                [str(self.binary), "--dump-quota"],
                check=True,
                capture_output=True,
                env=env,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b"").decode(errors="replace").strip()
            raise QuotaFetchError(
                f"{self.binary.name} --dump-quota exited {e.returncode}: {stderr}"
            ) from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise QuotaFetchError(f"{self.binary.name} --dump-quota: {e}") from e

        return parse_quota_output(result.stdout.decode(errors="replace"))
