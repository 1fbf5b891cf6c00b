"""External risk classifier capability and the Gemini-backed implementation.

The orchestrator only relies on :class:`ExternalClassifier`: one operation,
``classify(project, content_hash)``, which either returns an assessment or
raises :class:`ClassifierError`. Anything that goes wrong (missing key,
timeout, HTTP error, unparseable text) ends up as that single failure.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError

from devclean.common import DEFAULT_MODEL, data_dir
from devclean.risk import SOURCE_EXTERNAL, RiskAssessment, make_assessment
from devclean.scanner import ProjectMeta

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
DEFAULT_TIMEOUT_SEC = 20.0


class ClassifierError(RuntimeError):
    """The external classifier produced no usable assessment."""


class ExternalClassifier(Protocol):
    def classify(self, project: ProjectMeta, content_hash: str) -> RiskAssessment:
        ...


class ExternalVerdict(BaseModel):
    score: float = Field(ge=0, le=10)
    className: str | None = None
    reasons: list[str] = Field(default_factory=list)


# ------------------------------ Credentials --------------------------------- #


def api_key_path() -> Path:
    return data_dir() / "ai-key.json"


def current_model() -> str:
    return os.environ.get("GEMINI_MODEL", "").strip() or DEFAULT_MODEL


def load_api_key() -> str | None:
    env_key = os.environ.get("GEMINI_API_KEY", "").strip()
    if env_key:
        return env_key
    try:
        data = json.loads(api_key_path().read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    key = data.get("key") if isinstance(data, dict) else None
    return key.strip() if isinstance(key, str) and key.strip() else None


def save_api_key(key: str) -> Path:
    if not key.strip():
        raise ValueError("Key cannot be empty")
    path = api_key_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"key": key.strip()}), encoding="utf-8")
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass
    return path


def clear_api_key() -> bool:
    path = api_key_path()
    if not path.exists():
        return False
    path.unlink()
    return True


def ai_status() -> dict[str, Any]:
    if os.environ.get("GEMINI_API_KEY", "").strip():
        source = "env"
    elif api_key_path().exists():
        source = "local"
    else:
        source = "none"
    return {"has_key": source != "none", "model": current_model(), "source": source}


# ------------------------------ Response Parsing ---------------------------- #


def strip_code_fence(text: str) -> str:
    trimmed = text.strip()
    if not trimmed.startswith("```"):
        return trimmed
    body = trimmed[3:]
    for lang in ("json", "JSON"):
        if body.startswith(lang):
            body = body[len(lang):]
            break
    return body.strip().removesuffix("```").strip()


def extract_json_object(text: str) -> str | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def parse_verdict(text: str) -> RiskAssessment:
    payload = extract_json_object(strip_code_fence(text))
    if payload is None:
        raise ClassifierError("response contained no JSON object")
    try:
        verdict = ExternalVerdict.model_validate_json(payload)
    except ValidationError as exc:
        raise ClassifierError(f"response failed validation: {exc.error_count()} error(s)") from exc
    # className from the model is advisory; the label is always derived from the score.
    return make_assessment(verdict.score, verdict.reasons, SOURCE_EXTERNAL)


def response_text(body: Any) -> str:
    try:
        parts = body["candidates"][0]["content"]["parts"]
        texts = [p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
    except (KeyError, IndexError, TypeError) as exc:
        raise ClassifierError("response missing candidate text") from exc
    if not texts:
        raise ClassifierError("response missing candidate text")
    return "".join(texts)


def build_prompt(project: ProjectMeta, content_hash: str) -> str:
    return json.dumps({
        "task": "Assess project deletion risk for a developer storage cleanup tool.",
        "instructions": [
            "Return JSON only, no markdown.",
            "Use score 0-10, where 0 is safe to delete and 10 is critical.",
            "Return short reasons (3-5).",
            "Use className as Critical, Active, or Burner.",
        ],
        "project": {
            "name": project.name,
            "path": project.path,
            "dependencyCount": project.dependency_count,
            "hasGit": project.has_vcs_marker,
            "hasEnvFile": project.has_env_file,
            "hasStartupKeyword": project.has_startup_keyword,
            "lastModifiedDays": project.last_modified_days,
            "sizeBytes": project.size_bytes,
            "manifestHash": content_hash,
        },
    })


# ------------------------------- Gemini Client ------------------------------ #


class GeminiClassifier:
    """Blocking Gemini ``generateContent`` client; safe to share across threads."""

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        client: httpx.Client | None = None,
    ):
        if not api_key:
            raise ClassifierError("Gemini API key missing")
        self.api_key = api_key
        self.model = model or current_model()
        self.client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_environment(cls) -> "GeminiClassifier | None":
        key = load_api_key()
        return cls(key) if key else None

    def close(self) -> None:
        self.client.close()

    def classify(self, project: ProjectMeta, content_hash: str) -> RiskAssessment:
        body = {
            "contents": [{"role": "user", "parts": [{"text": build_prompt(project, content_hash)}]}],
            "generationConfig": {"temperature": 0.2, "maxOutputTokens": 220},
        }
        try:
            resp = self.client.post(
                GEMINI_ENDPOINT.format(model=self.model),
                params={"key": self.api_key},
                json=body,
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise ClassifierError(f"AI request failed with status {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise ClassifierError(f"AI request failed: {exc.__class__.__name__}") from exc
        except ValueError as exc:
            raise ClassifierError("AI response was not JSON") from exc

        return parse_verdict(response_text(data))


__all__ = [
    "ClassifierError",
    "ExternalClassifier",
    "GeminiClassifier",
    "ai_status",
    "clear_api_key",
    "load_api_key",
    "parse_verdict",
    "save_api_key",
]
