from __future__ import annotations

from pathlib import Path

from clear_terms.core.logging import get_logger, log_event

logger = get_logger(__name__)

LANGUAGE_NAMES: dict[str, str] = {
    "fr": "français",
    "en": "English",
}

# Secret mounts first, then the working directory.
PROMPT_TEMPLATE_PATHS: tuple[Path, ...] = (
    Path("/etc/secrets/prompt-template.md"),
    Path("etc/secrets/prompt-template.md"),
    Path("prompt-template.md"),
)

DEFAULT_PROMPT_TEMPLATE = """You are a consumer-rights analyst. Read the terms of service below and
assess how they treat the user.

Return JSON only, with this exact shape:
{
  "site_name": string,
  "summary": string,
  "overall_status": "green" | "amber" | "red",
  "categories": {
    "data_collection": {"status": "green" | "amber" | "red" | "n/a", "comment": string},
    "data_sharing": {"status": "green" | "amber" | "red" | "n/a", "comment": string},
    "data_retention": {"status": "green" | "amber" | "red" | "n/a", "comment": string},
    "account_termination": {"status": "green" | "amber" | "red" | "n/a", "comment": string},
    "content_rights": {"status": "green" | "amber" | "red" | "n/a", "comment": string},
    "liability": {"status": "green" | "amber" | "red" | "n/a", "comment": string},
    "dispute_resolution": {"status": "green" | "amber" | "red" | "n/a", "comment": string},
    "changes_to_terms": {"status": "green" | "amber" | "red" | "n/a", "comment": string}
  }
}

Rules:
- Only use what the document states. If a topic is not covered, use "n/a".
- Each comment is at most two sentences and cites the clause it relies on.
- Do not wrap the JSON in markdown.

Terms of service:"""


def load_prompt_template(path: Path | None = None) -> str:
    candidates = (path,) if path is not None else PROMPT_TEMPLATE_PATHS
    for candidate in candidates:
        try:
            text = candidate.read_text(encoding="utf-8")
        except OSError:
            continue
        if text.strip():
            log_event(logger, "prompt.template.loaded", path=str(candidate))
            return text
    if path is not None:
        raise FileNotFoundError(f"Prompt template not found: {path}")
    return DEFAULT_PROMPT_TEMPLATE


def language_instruction(language: str) -> str:
    name = LANGUAGE_NAMES.get(language, "English").upper()
    code = language.upper()
    return (
        f"OUTPUT LANGUAGE: {name} ({code})\n\n"
        f'Write every "comment" and the "summary" field in {name} only, whatever the '
        "language of the source document.\n"
        '"status" values stay in English (green/amber/red/n/a).\n'
        "---\n\n"
    )


def build_prompt(template: str, content: str, language: str) -> str:
    return language_instruction(language) + template + "\n\n" + content
