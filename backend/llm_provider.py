"""
Expert Evaluator - Multi-Provider LLM Client
=============================================
Priority order (auto):
  1. Gemini 1.5 Flash   : primary, fast, reliable
  2. Claude (Anthropic) : strong structured JSON
  3. Groq / Llama       : free tier, very fast
  4. Ollama (local)     : fully offline fallback (llama3, mistral, etc.)
  5. Rule-based         : ultimate fallback, no API needed

Set in .env:
  GEMINI_API_KEY=...
  ANTHROPIC_API_KEY=...
  GROQ_API_KEY=...
  OLLAMA_BASE_URL=http://localhost:11434   (optional, for offline mode)
  OLLAMA_MODEL=llama3                      (default: llama3)
  LLM_PROVIDER=auto                        (auto | gemini | claude | groq | ollama)
"""

import os
import json
import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import requests

from prompts.assessment_prompts import (
    QUESTION_TASK_MARKER,
    ANALYSIS_TASK_MARKER,
    DEFAULT_ANALYSIS,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert code reviewer assessing whether a developer truly understands "
    "the project they submitted. Always respond with valid JSON only. "
    "No markdown fences, no extra text."
)


@dataclass
class LLMResponse:
    text: str
    provider: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


class LLMResponseError(ValueError):
    """The model replied, but not with parseable JSON."""


# ─────────────────────────────────────────────────────────────────────────────
# JSON extraction
# ─────────────────────────────────────────────────────────────────────────────

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


def extract_json(text: str):
    """
    Pull the first JSON value out of a model reply.
    Accepts bare JSON, ```json fenced blocks, or JSON embedded in prose.
    Raises LLMResponseError.
    """
    if not text or not text.strip():
        raise LLMResponseError("Empty model response")

    fenced = _FENCE_RE.search(text)
    candidate = fenced.group(1) if fenced else text.strip()

    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    # first {...} or [...] span, whichever starts earlier
    starts = [i for i in (candidate.find("{"), candidate.find("[")) if i != -1]
    if starts:
        start = min(starts)
        closer = "}" if candidate[start] == "{" else "]"
        end = candidate.rfind(closer)
        if end > start:
            try:
                return json.loads(candidate[start:end + 1])
            except json.JSONDecodeError as e:
                raise LLMResponseError(f"Invalid JSON in model response: {e}") from e

    raise LLMResponseError("No JSON found in model response")


# ─────────────────────────────────────────────────────────────────────────────
# Gemini Provider (primary)
# ─────────────────────────────────────────────────────────────────────────────

class GeminiProvider:
    DEFAULT_MODEL = "gemini-1.5-flash"

    def __init__(self, api_key: str, model: Optional[str] = None):
        self.api_key = api_key
        self.model = model or os.getenv("GEMINI_MODEL", self.DEFAULT_MODEL)
        self._client = None

    def _get_client(self):
        if self._client is None:
            import google.generativeai as genai
            genai.configure(api_key=self.api_key)
            self._client = genai.GenerativeModel(
                model_name=self.model,
                system_instruction=SYSTEM_PROMPT,
                generation_config={"temperature": 0.7, "top_k": 40, "top_p": 0.95, "max_output_tokens": 4096},
            )
            logger.info("✅ Gemini client ready: %s", self.model)
        return self._client

    def generate(self, prompt: str) -> LLMResponse:
        start = time.time()
        client = self._get_client()
        response = client.generate_content(prompt)
        text = response.text if hasattr(response, "text") else str(response)
        latency = (time.time() - start) * 1000
        return LLMResponse(text=text, provider="gemini", model=self.model, latency_ms=round(latency, 2))

    def is_available(self) -> bool:
        return bool(self.api_key) and self.api_key not in ("", "your_gemini_api_key_here")


# ─────────────────────────────────────────────────────────────────────────────
# Claude Provider (Anthropic)
# ─────────────────────────────────────────────────────────────────────────────

class ClaudeProvider:
    DEFAULT_MODEL = "claude-haiku-4-5-20251001"

    def __init__(self, api_key: str, model: Optional[str] = None):
        self.api_key = api_key
        self.model = model or os.getenv("CLAUDE_MODEL", self.DEFAULT_MODEL)
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(api_key=self.api_key)
            logger.info("✅ Claude client ready: %s", self.model)
        return self._client

    def generate(self, prompt: str) -> LLMResponse:
        start = time.time()
        client = self._get_client()

        message = client.messages.create(
            model=self.model,
            max_tokens=4096,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
        )

        text = message.content[0].text
        latency = (time.time() - start) * 1000

        return LLMResponse(
            text=text,
            provider="claude",
            model=self.model,
            prompt_tokens=message.usage.input_tokens,
            completion_tokens=message.usage.output_tokens,
            latency_ms=round(latency, 2),
        )

    def is_available(self) -> bool:
        return bool(self.api_key) and self.api_key not in ("", "your_anthropic_api_key_here")


# ─────────────────────────────────────────────────────────────────────────────
# Groq Provider
# ─────────────────────────────────────────────────────────────────────────────

class GroqProvider:
    DEFAULT_MODEL = "llama-3.3-70b-versatile"

    def __init__(self, api_key: str, model: Optional[str] = None):
        self.api_key = api_key
        self.model = model or os.getenv("GROQ_MODEL", self.DEFAULT_MODEL)
        self._client = None

    def _get_client(self):
        if self._client is None:
            from groq import Groq
            self._client = Groq(api_key=self.api_key)
            logger.info("✅ Groq client ready: %s", self.model)
        return self._client

    def generate(self, prompt: str) -> LLMResponse:
        start = time.time()
        client = self._get_client()
        # no response_format: question generation needs a top-level array
        resp = client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0.7,
            max_tokens=4096,
        )
        text = resp.choices[0].message.content
        latency = (time.time() - start) * 1000
        return LLMResponse(
            text=text,
            provider="groq",
            model=self.model,
            prompt_tokens=resp.usage.prompt_tokens if resp.usage else 0,
            completion_tokens=resp.usage.completion_tokens if resp.usage else 0,
            latency_ms=round(latency, 2),
        )

    def is_available(self) -> bool:
        return bool(self.api_key) and self.api_key not in ("", "your_groq_api_key_here")


# ─────────────────────────────────────────────────────────────────────────────
# Ollama Provider (fully offline)
# ─────────────────────────────────────────────────────────────────────────────

class OllamaProvider:
    """
    Uses a locally-running Ollama server.
    Install Ollama: https://ollama.ai
    Run: ollama pull llama3
    Then: ollama serve
    """

    def __init__(self, base_url: Optional[str] = None, model: Optional[str] = None):
        self.base_url = base_url or os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
        self.model = model or os.getenv("OLLAMA_MODEL", "llama3")

    def generate(self, prompt: str) -> LLMResponse:
        start = time.time()
        resp = requests.post(
            f"{self.base_url}/api/generate",
            json={
                "model": self.model,
                "prompt": SYSTEM_PROMPT + "\n\n" + prompt,
                "stream": False,
                "options": {"temperature": 0.7, "num_predict": 2048},
            },
            timeout=120,
        )
        resp.raise_for_status()
        text = resp.json().get("response", "")
        latency = (time.time() - start) * 1000
        logger.info("✅ Ollama response (%.2fms): %s", latency, text[:80])

        return LLMResponse(text=text, provider="ollama", model=self.model, latency_ms=round(latency, 2))

    def is_available(self) -> bool:
        try:
            requests.get(f"{self.base_url}/api/tags", timeout=3)
            return True
        except requests.RequestException:
            return False


# ─────────────────────────────────────────────────────────────────────────────
# Rule-Based Fallback (no API, no internet)
# ─────────────────────────────────────────────────────────────────────────────

_DECOY_FILES = [
    "src/legacy/PaymentGateway.java", "app/views/admin_panel.rb", "lib/crypto/rsa_keys.c",
    "server/graphql/resolvers.go", "scripts/deploy_k8s.sh", "mobile/ios/AppDelegate.swift",
    "src/workers/ml_trainer.py", "config/nginx/site.conf", "src/components/Carousel.vue",
    "internal/cache/redis_pool.rs", "docs/API_v3_migration.md", "db/seeds/warehouse.sql",
]


class RuleBasedFallbackProvider:
    """
    Answers when every model provider is unavailable.

    Question prompts  → structural questions built from the "File: <name>"
                        headers in the prompt (which file belongs to the project?)
    Analysis prompts  → the default analysis payload
    """

    def is_available(self) -> bool:
        return True

    def generate(self, prompt: str) -> LLMResponse:
        if QUESTION_TASK_MARKER in prompt:
            payload = _structural_questions(prompt)
        elif ANALYSIS_TASK_MARKER in prompt:
            payload = DEFAULT_ANALYSIS
        else:
            payload = {}
        return LLMResponse(text=json.dumps(payload), provider="fallback", model="rule-based", latency_ms=0.0)


def _structural_questions(prompt: str, count: int = 10) -> list:
    names = re.findall(r"^File: (.+)$", prompt, flags=re.MULTILINE)
    names = [n.strip() for n in names if n.strip()]
    decoys = [d for d in _DECOY_FILES if d not in names]

    questions = []
    for name in names[:count]:
        rng = random.Random(name)   # deterministic per file
        options = rng.sample(decoys, 3) + [name]
        rng.shuffle(options)
        questions.append({
            "questionText": "Which of the following files is part of the submitted project?",
            "options": options,
            "correctAnswer": name,
        })
    return questions


# ─────────────────────────────────────────────────────────────────────────────
# Multi-Provider Client
# ─────────────────────────────────────────────────────────────────────────────

class LLMClient:
    """
    Unified client that tries providers in priority order with fallback.
    """

    def __init__(self, providers: list):
        self._providers = providers
        self._last_used_provider = None

    @classmethod
    def from_env(cls) -> "LLMClient":
        gemini_key = os.getenv("GEMINI_API_KEY", "")
        anthropic_key = os.getenv("ANTHROPIC_API_KEY", "")
        groq_key = os.getenv("GROQ_API_KEY", "")
        preference = os.getenv("LLM_PROVIDER", "auto").lower()

        providers = []

        def add_gemini():
            if GeminiProvider(gemini_key).is_available():
                providers.append(GeminiProvider(gemini_key))

        def add_claude():
            if ClaudeProvider(anthropic_key).is_available():
                providers.append(ClaudeProvider(anthropic_key))

        def add_groq():
            if GroqProvider(groq_key).is_available():
                providers.append(GroqProvider(groq_key))

        def add_ollama():
            p = OllamaProvider()
            if p.is_available():
                providers.append(p)
                logger.info("✅ Ollama offline provider detected")

        if preference == "claude":
            add_claude(); add_gemini(); add_groq(); add_ollama()
        elif preference == "groq":
            add_groq(); add_gemini(); add_claude(); add_ollama()
        elif preference == "ollama":
            add_ollama(); add_gemini(); add_claude(); add_groq()
        else:  # auto / gemini
            add_gemini(); add_claude(); add_groq(); add_ollama()

        providers.append(RuleBasedFallbackProvider())

        provider_names = [
            f"{p.__class__.__name__}({getattr(p, 'model', 'N/A')})"
            for p in providers
        ]
        logger.info("🚀 LLMClient ready with %d providers: %s", len(providers), provider_names)

        return cls(providers)

    def generate(self, prompt: str) -> LLMResponse:
        for provider in self._providers:
            if not provider.is_available():
                continue
            try:
                logger.info("Trying: %s", provider.__class__.__name__)
                response = provider.generate(prompt)
                self._last_used_provider = provider
                logger.info(
                    "✅ %s/%s responded in %.2fms",
                    response.provider, response.model, response.latency_ms,
                )
                return response
            except Exception as e:
                logger.warning("⚠️ %s failed: %s, trying next", provider.__class__.__name__, str(e)[:120])

        raise RuntimeError("All LLM providers failed.")

    def generate_json(
        self,
        prompt: str,
        required: Optional[list] = None,
        defaults: Optional[dict] = None,
        max_retries: int = 2,
    ) -> Tuple[dict, bool]:
        """
        Generate and parse a JSON object with retries.

        Returns (data, parsed_ok). When every attempt fails, returns
        (defaults, False) so the caller can record that the reply was not
        the model's own.
        """
        defaults = dict(defaults or {})
        required = required or []

        for attempt in range(max_retries + 1):
            try:
                response = self.generate(prompt)
                data = extract_json(response.text)
                if not isinstance(data, dict):
                    raise LLMResponseError("Expected a JSON object")

                for field in required:
                    if field not in data and field in defaults:
                        data[field] = defaults[field]
                return data, True
            except (LLMResponseError, RuntimeError) as e:
                if attempt == max_retries:
                    logger.error("JSON parse failed after %d retries: %s, using defaults", max_retries, e)
                    return defaults, False
                logger.warning("JSON parse attempt %d failed: %s", attempt + 1, e)

        return defaults, False

    @property
    def active_provider(self) -> str:
        p = self._last_used_provider
        if p is None:
            for p in self._providers:
                if p.is_available():
                    break
            else:
                return "none"
        return f"{p.__class__.__name__}({getattr(p, 'model', 'N/A')})"
