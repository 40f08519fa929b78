"""Deterministic, network-free fallback projects.

Used whenever the gateway fails, returns nothing, or returns output that cannot
be repaired into a complete file map. Every function here is pure and cannot
fail for any ``str`` input.
"""

from __future__ import annotations

import html
import json
import re

from .models import GenerationResult
from .repair import REQUIRED_FILES, check_required_files

PROJECT_ROOT = "vue-project"
MAX_DESCRIPTION_CHARS = 500
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]+")

_PACKAGE_JSON = {
    "name": "vue-ai-generated-project",
    "version": "1.0.0",
    "private": True,
    "type": "module",
    "scripts": {
        "dev": "vite",
        "build": "vite build",
        "preview": "vite preview",
    },
    "dependencies": {
        "vue": "^3.5.17",
        "element-plus": "^2.10.4",
    },
    "devDependencies": {
        "@vitejs/plugin-vue": "^5.1.4",
        "vite": "^6.0.1",
    },
}

_INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>AI Generated Vue App</title>
</head>
<body>
  <div id="app"></div>
  <script type="module" src="/src/main.js"></script>
</body>
</html>
"""

_VITE_CONFIG = """import { defineConfig } from 'vite'
import vue from '@vitejs/plugin-vue'

export default defineConfig({
  plugins: [vue()]
})
"""

_MAIN_JS = """import { createApp } from 'vue'
import ElementPlus from 'element-plus'
import 'element-plus/dist/index.css'
import App from './App.vue'

const app = createApp(App)
app.use(ElementPlus)
app.mount('#app')
"""

_APP_VUE = """<template>
  <div class="app-container">
    <el-card class="main-card">
      <h1>AI Generated Vue 3 App</h1>
      <p class="description">Request: {description}</p>
      <el-divider />
      <el-row :gutter="20">
        <el-col :span="16">
          <el-input v-model="inputText" placeholder="Type something" />
        </el-col>
        <el-col :span="8">
          <el-button type="primary" @click="handleClick">Confirm</el-button>
        </el-col>
      </el-row>
      <el-alert v-if="message" class="message" :title="message" type="success" show-icon />
    </el-card>
  </div>
</template>

<script setup>
import {{ ref }} from 'vue'
import {{ ElMessage }} from 'element-plus'

const inputText = ref('')
const message = ref('')

const handleClick = () => {{
  if (inputText.value.trim()) {{
    message.value = `You entered: ${{inputText.value}}`
    ElMessage.success('Done')
  }} else {{
    ElMessage.warning('Please enter something')
  }}
}}
</script>

<style scoped>
.app-container {{
  min-height: 100vh;
  display: flex;
  align-items: center;
  justify-content: center;
  padding: 20px;
  background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
}}

.main-card {{
  max-width: 800px;
  width: 100%;
}}

.description {{
  text-align: center;
  color: #606266;
}}

.message {{
  margin-top: 20px;
}}

h1 {{
  color: #409eff;
  text-align: center;
}}
</style>
"""


def sanitize_description(description: str) -> str:
    """Collapse control characters, truncate, and HTML-escape for template embedding."""
    text = _CONTROL_CHARS_RE.sub(" ", description).strip()
    if len(text) > MAX_DESCRIPTION_CHARS:
        text = text[:MAX_DESCRIPTION_CHARS].rstrip() + "..."
    if not text:
        text = "(no description provided)"
    text = html.escape(text)
    # Vue treats {{ }} as interpolation even inside escaped HTML.
    while "{{" in text or "}}" in text:
        text = text.replace("{{", "{ {").replace("}}", "} }")
    return text


def fallback_files(description: str) -> dict[str, str]:
    return {
        f"{PROJECT_ROOT}/package.json": json.dumps(_PACKAGE_JSON, indent=2) + "\n",
        f"{PROJECT_ROOT}/index.html": _INDEX_HTML,
        f"{PROJECT_ROOT}/vite.config.js": _VITE_CONFIG,
        f"{PROJECT_ROOT}/src/main.js": _MAIN_JS,
        f"{PROJECT_ROOT}/src/App.vue": _APP_VUE.format(description=sanitize_description(description)),
    }


def synthesize_fallback_project(description: str) -> GenerationResult:
    """Minimal runnable Vue 3 + Vite project whose root component echoes the request."""
    return GenerationResult(files=fallback_files(description), provenance="fallback")


def fill_missing_artifacts(files: dict[str, str], description: str) -> dict[str, str]:
    """Add fallback versions of any missing sentinel files, keeping existing ones."""
    merged = dict(files)
    templates = fallback_files(description)
    prefix = _project_prefix(files)
    for required in REQUIRED_FILES:
        if any(required in path for path in merged):
            continue
        merged[f"{prefix}{required}"] = templates[f"{PROJECT_ROOT}/{required}"]
    return merged


def _project_prefix(files: dict[str, str]) -> str:
    """Directory prefix the model used for its sentinel files, e.g. ``"my-app/"``."""
    for path in files:
        for required in REQUIRED_FILES:
            if path.endswith(required):
                return path[: -len(required)]
    return ""


def fallback_for_modification(files: dict[str, str], instruction: str) -> GenerationResult:
    """On a failed modification keep the caller's project if it is complete."""
    if files and check_required_files(files) is None:
        return GenerationResult(files=dict(files), provenance="fallback")
    return synthesize_fallback_project(instruction)
