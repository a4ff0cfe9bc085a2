"""AI collaborator used to rewrite task content.

The workspace only depends on the ``TaskGenerator`` protocol: given a
system prompt and a user prompt it returns text plus usage telemetry.
``OpenAITaskGenerator`` implements it against any OpenAI-compatible API.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

from openai import OpenAI

from .config import Settings
from .errors import AI_RESPONSE_INVALID, GENERATION_ERROR, GenerationError, TaskValidationError
from .models import DONE_STATUSES, EXECUTORS, PRIORITIES, parse_reference


logger = logging.getLogger("taskweave.ai")

PROVIDER_NAME = "openai"

UPDATE_TASK_SYSTEM_PROMPT = """You are an AI assistant helping to update a software development task based on new context.
You will be given a task and a prompt describing changes or new implementation details.
Your job is to update the task to reflect these changes, while preserving its basic structure.

Guidelines:
1. Never change the title of the task
2. Keep the same ID, status, and dependencies unless the prompt asks for a change
3. Update the description, details, and test strategy to reflect the new information
4. Preserve every subtask whose status is "done" or "completed" exactly as it is
5. If a completed subtask needs to change, add a new subtask describing the change instead
6. New subtasks must have ids that do not clash with existing ones
7. Return a complete, valid JSON object representing the updated task and nothing else"""

_CODE_BLOCK = re.compile(r"```(?:json|javascript)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_PREFIXES = ("json\n", "javascript\n")


@dataclass(slots=True)
class GenerationResult:
    """Text returned by a generator plus its usage telemetry."""

    text: str
    telemetry: Dict[str, Any] = field(default_factory=dict)


class TaskGenerator(Protocol):
    def generate_text(self, *, system_prompt: str, prompt: str, role: str = "main") -> GenerationResult:
        ...


class OpenAITaskGenerator:
    """Generator backed by an OpenAI-compatible chat completions endpoint."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._client: Optional[OpenAI] = None

    def _get_client(self) -> OpenAI:
        if self._client is not None:
            return self._client
        if not self.settings.ai_api_key:
            raise GenerationError(
                "No API key configured. Set TASKWEAVE_AI_API_KEY or OPENAI_API_KEY.",
                code=GENERATION_ERROR,
            )
        kwargs: Dict[str, Any] = {
            "api_key": self.settings.ai_api_key,
            "timeout": self.settings.ai_timeout_seconds,
            "max_retries": 0,
        }
        if self.settings.ai_base_url:
            kwargs["base_url"] = self.settings.ai_base_url
        self._client = OpenAI(**kwargs)
        return self._client

    def _model_for(self, role: str) -> str:
        if role == "research" and self.settings.ai_research_model:
            return self.settings.ai_research_model
        return self.settings.ai_model

    def generate_text(self, *, system_prompt: str, prompt: str, role: str = "main") -> GenerationResult:
        model = self._model_for(role)
        client = self._get_client()
        logger.info(f"Requesting completion from {model} (role={role})")
        try:
            response = client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )
        except Exception as e:
            raise GenerationError(f"AI request to {model} failed: {e}", code=GENERATION_ERROR) from e

        text = (response.choices[0].message.content or "") if response.choices else ""
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "prompt_tokens", 0) or 0
        output_tokens = getattr(usage, "completion_tokens", 0) or 0
        telemetry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model_used": model,
            "provider_name": PROVIDER_NAME,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
            "total_cost": 0.0,
            "currency": "USD",
        }
        return GenerationResult(text=text, telemetry=telemetry)


def build_update_prompt(task_data: Dict[str, Any], prompt: str) -> str:
    task_json = json.dumps(task_data, indent=2)
    return (
        f"Here is the task to update:\n{task_json}\n\n"
        f"Please update this task based on the following new context:\n{prompt}\n\n"
        'IMPORTANT: subtasks with "status": "done" or "status": "completed" must be preserved exactly as is.\n\n'
        "Return only the updated task as a valid JSON object."
    )


def parse_task_json(text: str) -> Dict[str, Any]:
    """Extract a JSON object from a model reply.

    Tries the outermost braces first, then a fenced code block, then a
    known ``json``/``javascript`` prefix, and finally the raw text.
    """
    if not text or not text.strip():
        raise GenerationError("AI response text is empty.", code=AI_RESPONSE_INVALID)

    cleaned = text.strip()
    candidate = None

    first, last = cleaned.find("{"), cleaned.rfind("}")
    if first != -1 and last > first and last - first > 1:
        try:
            candidate = json.loads(cleaned[first:last + 1])
        except json.JSONDecodeError:
            logger.debug("Content between braces failed to parse; trying other methods")

    if candidate is None:
        match = _CODE_BLOCK.search(cleaned)
        if match:
            cleaned = match.group(1).strip()
        else:
            for prefix in _PREFIXES:
                if cleaned.lower().startswith(prefix):
                    cleaned = cleaned[len(prefix):].strip()
                    break
        try:
            candidate = json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise GenerationError(
                f"Failed to parse JSON response object: {e}",
                code=AI_RESPONSE_INVALID,
                details={"response_excerpt": text[:500]},
            ) from e

    if not isinstance(candidate, dict):
        raise GenerationError("Parsed AI response is not a valid JSON object.", code=AI_RESPONSE_INVALID)
    return candidate


def _check_string(data: Dict[str, Any], key: str, issues: List[str], required: bool = False) -> None:
    value = data.get(key)
    if value is None:
        if required:
            issues.append(f"'{key}' is required")
        return
    if not isinstance(value, str) or (required and not value.strip()):
        issues.append(f"'{key}' must be a non-empty string" if required else f"'{key}' must be a string")


def _check_dependencies(value: Any, label: str, issues: List[str]) -> None:
    if value is None:
        return
    if not isinstance(value, list):
        issues.append(f"'{label}' must be a list")
        return
    for item in value:
        try:
            parse_reference(item)
        except TaskValidationError as e:
            issues.append(f"'{label}': {e}")


def validate_updated_task(data: Dict[str, Any], expected_id: int) -> Dict[str, Any]:
    """Check the shape of an AI-produced task and force its id.

    Raises ``GenerationError`` listing every problem found.
    """
    issues: List[str] = []
    _check_string(data, "title", issues, required=True)
    _check_string(data, "description", issues, required=True)
    for key in ("details", "testStrategy", "status"):
        _check_string(data, key, issues)
    if data.get("priority") is not None and data["priority"] not in PRIORITIES:
        issues.append(f"'priority' must be one of {', '.join(PRIORITIES)}")
    if data.get("executor") is not None and data["executor"] not in EXECUTORS:
        issues.append(f"'executor' must be one of {', '.join(EXECUTORS)}")
    _check_dependencies(data.get("dependencies"), "dependencies", issues)

    subtasks = data.get("subtasks")
    if subtasks is not None:
        if not isinstance(subtasks, list):
            issues.append("'subtasks' must be a list")
        else:
            for index, subtask in enumerate(subtasks):
                if not isinstance(subtask, dict):
                    issues.append(f"subtasks[{index}] must be an object")
                    continue
                raw_id = subtask.get("id")
                if isinstance(raw_id, bool) or not isinstance(raw_id, int) or raw_id <= 0:
                    issues.append(f"subtasks[{index}].id must be a positive integer")
                _check_string(subtask, "title", issues, required=True)
                _check_dependencies(subtask.get("dependencies"), f"subtasks[{index}].dependencies", issues)

    if issues:
        raise GenerationError(
            "AI response failed task structure validation: " + "; ".join(issues),
            code=AI_RESPONSE_INVALID,
            details={"issues": issues},
        )

    if data.get("id") != expected_id:
        logger.warning(f"AI returned task with ID {data.get('id')}, but expected {expected_id}. Overwriting ID.")
    return {**data, "id": expected_id}


def preserve_completed_subtasks(original: Dict[str, Any], updated: Dict[str, Any]) -> Dict[str, Any]:
    """Put back any completed subtask the model altered or dropped."""
    completed = {
        subtask["id"]: subtask
        for subtask in original.get("subtasks") or []
        if subtask.get("status") in DONE_STATUSES
    }
    if not completed:
        return updated
    subtasks = []
    seen = set()
    for subtask in updated.get("subtasks") or []:
        subtask_id = subtask.get("id")
        seen.add(subtask_id)
        subtasks.append(completed.get(subtask_id, subtask))
    for subtask_id, subtask in completed.items():
        if subtask_id not in seen:
            logger.warning(f"Restoring completed subtask {subtask_id} dropped by the AI response")
            subtasks.append(subtask)
    return {**updated, "subtasks": subtasks}


def aggregate_telemetry(items: Iterable[Dict[str, Any]], command_name: str) -> Optional[Dict[str, Any]]:
    """Combine telemetry records from several generator calls."""
    items = [item for item in items if item]
    if not items:
        return None

    models = {item.get("model_used") for item in items}
    providers = {item.get("provider_name") for item in items}
    currencies = {item.get("currency") or "USD" for item in items}
    input_tokens = sum(item.get("input_tokens") or 0 for item in items)
    output_tokens = sum(item.get("output_tokens") or 0 for item in items)

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "command_name": command_name,
        "model_used": models.pop() if len(models) == 1 else "Multiple",
        "provider_name": providers.pop() if len(providers) == 1 else "Multiple",
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
        "total_cost": round(sum(item.get("total_cost") or 0 for item in items), 6),
        "currency": currencies.pop() if len(currencies) == 1 else "Multiple",
    }
