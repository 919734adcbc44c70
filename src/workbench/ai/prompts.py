"""Prompt templates, response schema and the system notices injected by the loop.

Everything the model reads that does not come from the user lives here so the
wording can be reviewed in one place.
"""

from __future__ import annotations

from typing import Any, Mapping

# Read/attach thresholds quoted in the instructions and enforced by the dispatcher.
INLINE_READ_LIMIT_BYTES = 10_000
ATTACHMENT_LIMIT_BYTES = 20 * 1024 * 1024
APPEND_LIMIT_BYTES = 5 * 1024 * 1024


def system_instruction() -> str:
    """Return the system prompt sent ahead of every conversation."""

    return f"""{_identity_section()}

## AVAILABLE TOOLS
{_tools_section()}

## CRITICAL RULES
{_rules_section()}

## FINAL ANSWER FORMATTING
{_final_answer_section()}

## RESPONSE FORMAT
{_response_format_section()}
"""


def _identity_section() -> str:
    return (
        "You are Workbench, an autonomous agent with multimodal and web capabilities.\n\n"
        "## OBJECTIVE\n"
        "Execute the user's instructions efficiently using the provided tools."
    )


def _tools_section() -> str:
    return """1. **File Ops**:
   - `read`: PRIMARY ANALYSIS TOOL. Reads text or attaches binary files (videos, images, PDFs) so you can see them.
   - `write`, `append`, `move` (needs `source_path`), `delete`, `mkdir`.
2. **Web Ops**:
   - `web_search`: Search the internet for current information. Put the query in `content`.
3. **Image Ops**:
   - `generate_image`: Create a new image. `content` is the prompt, `path` the output file.
   - `edit_image`: Modify an existing image given in `source_path`.
   - `compose_image`: Merge the images listed in `source_paths`.
4. **Video Ops**:
   - `generate_video`: Create a video, optionally from the image in `source_path`.
   - `trim_video`: Cut `source_path`; `content` is JSON such as `{"start": 0, "end": 10}`.
5. **Math**: `calculate` evaluates the arithmetic expression in `content`.
6. **Code**: `run_script` executes the Python script stored at `path`. The script may use
   `console.log(...)`, `console.warn(...)`, `console.error(...)`, `print(...)`,
   `fs.read(path)` and `fs.write(path, text)`. Nothing else is importable."""


def _rules_section() -> str:
    return """1. **MULTIMODAL PERCEPTION**: To know what is in a media file, use `read` on it. Do not write a script to parse it.
2. **NO HALLUCINATION**: Only use tools required by the user's request.
3. **STRICT TOOL USAGE**:
   - Use `calculate` only when a numeric calculation is needed.
   - Do not use `edit_image` without a valid `source_path`.
   - Use `web_search` for current events or facts outside your training data.
4. **CONCISENESS**: `thought` must be one short sentence. Keep the JSON under 4000 characters.
5. **JSON**: Output raw JSON matching the schema, without code fences."""


def _final_answer_section() -> str:
    return """- `final_answer` is for the human user and must be Markdown (headers, lists, bold text).
- Wrap code in fenced Markdown code blocks.
- Never dump the internal JSON or your plan into `final_answer`."""


def _response_format_section() -> str:
    return """Return a JSON object with:
  - `thought`: brief reasoning.
  - `plan`: remaining steps.
  - `actions`: array of tool calls, each with `id`, `type` and `path`.
  - `risk_assessment`: `has_destructive_actions` and `confirmation_required_ids`.
  - `final_answer`: Markdown response, only when the task is done."""


RESPONSE_SCHEMA: Mapping[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["thought", "plan", "actions", "risk_assessment"],
    "properties": {
        "thought": {"type": "string"},
        "final_answer": {"type": ["string", "null"]},
        "plan": {"type": "array", "items": {"type": "string"}},
        "risk_assessment": {
            "type": "object",
            "required": ["has_destructive_actions", "confirmation_required_ids"],
            "properties": {
                "has_destructive_actions": {"type": "boolean"},
                "confirmation_required_ids": {"type": "array", "items": {"type": "string"}},
            },
        },
        "actions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "type", "path"],
                "properties": {
                    "id": {"type": "string"},
                    "type": {"type": "string", "minLength": 1},
                    "path": {"type": "string"},
                    "content": {"type": ["string", "null"]},
                    "source_path": {"type": ["string", "null"]},
                    "source_paths": {"type": ["array", "null"], "items": {"type": "string"}},
                    "description": {"type": ["string", "null"]},
                    "start_time": {"type": ["number", "null"]},
                    "end_time": {"type": ["number", "null"]},
                },
            },
        },
    },
}


# -----------------------------------------------------------------------------
# Injected notices
# -----------------------------------------------------------------------------

CORRECTIVE_JSON_MESSAGE = (
    "System Error: Your last response was not valid JSON. "
    "Please fix it and output STRICT valid JSON matching the schema."
)

REPETITION_WARNING = (
    "[SYSTEM DETECTED REPETITION LOOP: You are repeating identical actions. THIS IS FORBIDDEN. "
    "You MUST change your parameters, try a different tool, or ask the user for clarification. "
    "Do NOT output the same action again.]"
)

CONTINUE_REASONING_PROMPT = (
    "[System: Continue reasoning. Use tools like 'calculate' or 'run_script' if you need to "
    "perform calculations. Provide the final_answer when done.]"
)

NO_PROGRESS_WARNING = (
    "System Warning: You did not output any actions, a substantial thought, or a final answer. "
    "You must either take an action (read/write/etc), think deeply, or provide the final_answer "
    "to complete the task."
)

OBSERVATION_HEADER = "Observation from previous actions:"
STOPPED_BY_USER = "Stopped by user."
DEFAULT_COMPOSE_PROMPT = "Combine these images into a single cohesive composition."


def max_turns_notice(max_turns: int) -> str:
    return f"System: Maximum iteration limit ({max_turns}) reached. Stopping execution."


def verification_retry_directive(label: str, path: str, attempt: int, limit: int) -> str:
    return (
        f"[System: Verification failed for {label} '{path}': the path is missing from the workspace "
        f"after the action. Retry this action ({attempt}/{limit}).]"
    )


def verification_failed_notice(label: str, path: str, limit: int) -> str:
    return (
        f"[System: {label} '{path}' could not be verified after {limit} attempts. "
        "Stop retrying this action and report the failure in your final_answer.]"
    )


def attachment_notice(count: int) -> str:
    return f"\n[System: Attached {count} files for analysis in this turn.]"


def format_search_result(query: str, summary: str, sources: list[tuple[str, str]]) -> str:
    """Render a web search summary with a Markdown source list."""

    output = f'[Web Search Result for: "{query}"]\n\n{summary or "No results found."}\n\n'
    if sources:
        output += "**Sources:**\n"
        for title, uri in sources:
            output += f"- [{title or uri}]({uri})\n"
    return output
