#!/usr/bin/env python3
"""
Advisor - AI configuration suggestions from an OpenAI-compatible server

The engine only depends on the `AdvisorClient` protocol (text in, text out);
`OpenAIAdvisor` talks to a local Lemonade server by default.
"""

import json
import logging
import re
from typing import List, Optional, Protocol

import requests
from openai import OpenAI

from catalog import CatalogEntry
from errors import AdvisorUnavailable
from models import Suggestion, SuggestionSeverity
from settings import Settings

logger = logging.getLogger(__name__)

# Long files are cut so the prompt fits small local models
MAX_CONFIG_CHARS = 12000

SUGGESTION_PROMPT_TEMPLATE = """You are reviewing a configuration file on a Proxmox homelab.

## Workload
{workload}

## File
{path}

```
{content}
```

## Task
Point out misconfigurations, security problems and performance improvements
specific to this service. Only suggest changes you are confident about.

Reply with ONLY a JSON array, no prose. Each element must be an object with:
- "title": short summary
- "description": what to change and why
- "severity": one of "info", "warning", "error"
- "line": 1-based line number the suggestion applies to, or null
- "replacement": the suggested new line content, or null

Reply with [] if the file looks fine."""


class AdvisorClient(Protocol):
    def suggest(self, prompt: str) -> str:
        ...


def create_client(settings: Settings) -> OpenAI:
    """Create OpenAI client pointed at the advisor server."""
    return OpenAI(
        base_url=settings.advisor_base_url,
        api_key=settings.advisor_api_key,
        timeout=settings.advisor_timeout,
    )


# Pulling a model can take minutes on a slow link
MODEL_PULL_TIMEOUT = 600


def _listed_model(settings: Settings) -> Optional[dict]:
    """The advisor model's entry in the server's model list, if present."""
    response = requests.get(f"{settings.advisor_base_url}/models", timeout=settings.advisor_timeout)
    response.raise_for_status()
    for model in response.json().get("data", []):
        if model.get("id") == settings.advisor_model:
            return model
    return None


def ensure_model_available(settings: Settings) -> tuple[bool, str]:
    """
    Check the advisor model once at startup and pull it when the server
    supports that (Lemonade does; plain OpenAI-compatible servers answer 404).
    Returns (ready, message); a False result only means suggestions stay empty.
    """
    base_url = settings.advisor_base_url
    model_name = settings.advisor_model
    try:
        model = _listed_model(settings)
        # Servers without a download concept list only what they can serve
        if model is not None and model.get("downloaded", True):
            return True, f"Advisor model ready: {model_name}"

        logger.info(f"Advisor model {model_name} not present on {base_url}, pulling")
        pull_response = requests.post(
            f"{base_url}/pull",
            json={"model": model_name},
            timeout=MODEL_PULL_TIMEOUT,
        )
        if pull_response.status_code in (404, 405):
            return False, f"Advisor server at {base_url} has no model {model_name} and cannot pull it"
        pull_response.raise_for_status()
        return True, f"Advisor model pulled: {model_name}"

    except requests.ConnectionError:
        return False, f"Cannot connect to advisor server at {base_url}"
    except requests.Timeout:
        return False, f"Advisor server at {base_url} did not answer in time"
    except (requests.RequestException, ValueError) as e:
        return False, f"Advisor server at {base_url} gave an unusable answer: {e}"


class OpenAIAdvisor:
    def __init__(self, settings: Settings, client: Optional[OpenAI] = None):
        self.settings = settings
        self.model_name = settings.advisor_model
        self.client = client or create_client(settings)

    def suggest(self, prompt: str) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model_name,
                messages=[{"role": "user", "content": prompt}],
                stream=False,
                timeout=self.settings.advisor_timeout,
            )
        except Exception as e:
            raise AdvisorUnavailable(f"Advisor request failed: {e}") from e
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AdvisorUnavailable("Advisor returned an empty reply")
        return content


def build_prompt(entry: CatalogEntry, path: str, content: str) -> str:
    if len(content) > MAX_CONFIG_CHARS:
        content = content[:MAX_CONFIG_CHARS] + "\n# ... (truncated)"
    workload = f"{entry.name} (id {entry.id}, {entry.category}): {entry.description}"
    return SUGGESTION_PROMPT_TEMPLATE.format(workload=workload, path=path, content=content)


def _severity(value) -> SuggestionSeverity:
    try:
        return SuggestionSeverity(str(value).lower())
    except ValueError:
        return SuggestionSeverity.INFO


def parse_suggestions(text: str) -> List[Suggestion]:
    """
    Extract the JSON array from a model reply. Code fences and chatter around
    the array are tolerated; malformed items are skipped.
    """
    text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL)
    start, end = text.find("["), text.rfind("]")
    if start == -1 or end <= start:
        raise AdvisorUnavailable("Advisor reply contained no JSON array")
    try:
        items = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise AdvisorUnavailable(f"Advisor reply was not valid JSON: {e}") from e

    suggestions = []
    for item in items:
        if not isinstance(item, dict) or not item.get("title"):
            continue
        line = item.get("line")
        suggestions.append(
            Suggestion(
                title=str(item["title"]),
                description=str(item.get("description", "")),
                severity=_severity(item.get("severity", "info")),
                line=line if isinstance(line, int) and line > 0 else None,
                replacement=item.get("replacement") if isinstance(item.get("replacement"), str) else None,
            )
        )
    return suggestions
