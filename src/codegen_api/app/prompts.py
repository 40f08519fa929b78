"""Default prompt templates for project generation and modification."""

from __future__ import annotations

import json

SYSTEM_PROMPT = (
    "You are an expert Vue 3 front-end engineer. You build modern web applications "
    "with Vue 3 (Composition API), Element Plus and Vite. You answer with a single JSON "
    "object and nothing else."
)

OUTPUT_FORMAT = """Output format:
Return ONE JSON object mapping relative file paths to complete file contents, e.g.
{
  "my-app/package.json": "...",
  "my-app/index.html": "...",
  "my-app/vite.config.js": "...",
  "my-app/src/main.js": "...",
  "my-app/src/App.vue": "...",
  "my-app/src/components/Example.vue": "..."
}
The project must contain package.json, index.html, src/main.js and src/App.vue.
Escape quotes and newlines inside values as JSON requires. Do not wrap the object
in prose."""

GENERATION_TEMPLATE = """User request: {description}

Build a complete, runnable Vue 3 project for this request.

Requirements:
1. Use the Composition API with <script setup>.
2. Use Element Plus components where they fit.
3. Use modern, responsive CSS (flexbox or grid).
4. Visual style: {style}.
{components_line}
If the request is vague, infer sensible basic functionality and implement it.

{output_format}"""

MODIFICATION_TEMPLATE = """Current project files (JSON):
{current_files}

Requested change: {instruction}

Guidelines:
1. Keep the existing structure and code style.
2. Change only what the request needs.
3. Return the complete, updated project, including unchanged files.

{output_format}"""


def build_generation_prompt(
    description: str,
    components: list[str] | None = None,
    style: str = "modern",
) -> str:
    components_line = ""
    if components:
        components_line = "5. Include these components: " + ", ".join(components) + ".\n"
    return GENERATION_TEMPLATE.format(
        description=description.strip(),
        style=style.strip() or "modern",
        components_line=components_line,
        output_format=OUTPUT_FORMAT,
    )


def build_modification_prompt(files: dict[str, str], instruction: str) -> str:
    return MODIFICATION_TEMPLATE.format(
        current_files=json.dumps(files, indent=2, ensure_ascii=False),
        instruction=instruction.strip(),
        output_format=OUTPUT_FORMAT,
    )
