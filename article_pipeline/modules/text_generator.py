"""
Article text generator using an OpenAI-compatible chat completions API.

DeepSeek is the default backend; OpenAI works with the same request shape.
Prompts are loaded from external .txt files for easy editing.

Two modes:
- rewrite: turn placeholder-substituted source text into an SEO article
- generate: write an article from title and category, with image markers
"""

import logging
import re
from pathlib import Path
from typing import Optional, Protocol

import httpx

from ..errors import EmptyGenerationError, GenerationError, InputTooLongError
from .content_store import Article, ArticleMode

logger = logging.getLogger(__name__)

DEEPSEEK_BASE_URL = "https://api.deepseek.com/v1"
DEFAULT_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

# Provider error bodies for oversized input
_CONTEXT_LENGTH_RE = re.compile(r"context[ _]length|maximum context|too many tokens", re.IGNORECASE)


class ArticleGenerator(Protocol):
    """Produces raw article text with one external call per invocation."""

    def generate(
        self,
        mode: ArticleMode,
        article: Article,
        source_text: Optional[str] = None,
    ) -> str:
        ...


class ChatCompletionGenerator:
    """
    Generates article text through a chat completions endpoint.

    Prompts are loaded from .txt files in prompts_dir:
    - rewrite_system.txt
    - generate_system.txt
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEEPSEEK_BASE_URL,
        prompts_dir: Path = DEFAULT_PROMPTS_DIR,
        model: str = "deepseek-chat",
        timeout: int = 120,
        max_tokens: int = 4000,
        temperature: float = 0.7,
        client: Optional[httpx.Client] = None,
    ):
        """
        Initialize text generator.

        Args:
            api_key: DeepSeek or OpenAI API key
            base_url: API base URL (without /chat/completions)
            prompts_dir: Directory containing prompt .txt files
            model: Model to use
            timeout: Request timeout in seconds
            max_tokens: Output budget per article
            temperature: Sampling temperature
            client: Optional preconfigured HTTP client
        """
        self.base_url = base_url.rstrip("/")
        self.prompts_dir = Path(prompts_dir)
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature

        self.client = client or httpx.Client(
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

        logger.info(f"TextGenerator initialized, model: {model}, prompts dir: {self.prompts_dir}")

    def _load_prompt(self, name: str) -> str:
        """
        Load prompt from .txt file.

        Raises:
            GenerationError: If the prompt file is missing or empty
        """
        path = self.prompts_dir / f"{name}.txt"
        if not path.exists():
            raise GenerationError(f"Prompt file not found: {path}")

        content = path.read_text(encoding="utf-8").strip()
        if not content:
            raise GenerationError(f"Prompt file is empty: {path}")

        logger.debug(f"Loaded prompt: {name} ({len(content)} chars)")
        return content

    def generate(
        self,
        mode: ArticleMode,
        article: Article,
        source_text: Optional[str] = None,
    ) -> str:
        """
        Produce raw article text.

        Args:
            mode: REWRITE or GENERATE
            article: Article being processed (title, category, prompt override)
            source_text: Rewrite input; defaults to article.source_text

        Returns:
            Generated markdown

        Raises:
            EmptyGenerationError: The API returned no content
            InputTooLongError: The API rejected the input as too long
            GenerationError: Timeout, HTTP error or malformed response
        """
        if mode == ArticleMode.REWRITE:
            system_prompt = self._load_prompt("rewrite_system")
            user_content = source_text if source_text is not None else (article.source_text or "")
        elif mode == ArticleMode.GENERATE:
            template = article.custom_prompt or self._load_prompt("generate_system")
            category = article.category or "General"
            # Stored custom prompts may use either placeholder spelling
            system_prompt = (
                template
                .replace("{title}", article.title)
                .replace("{categoryName}", category)
                .replace("{category}", category)
            )
            user_content = f"Generate a comprehensive article about: {article.title}"
        else:
            raise ValueError(f"Unsupported generation mode: {mode.value}")

        logger.info(f"Generating ({mode.value}) article {article.id}: {article.title}")

        content = self._call_api(system_prompt, user_content).strip()
        if not content:
            raise EmptyGenerationError("AI returned empty content")

        logger.info(f"Content generated, length: {len(content)}")
        return content

    def _call_api(self, system_prompt: str, user_content: str) -> str:
        """Make one chat completions call and return the message content."""
        try:
            response = self.client.post(
                f"{self.base_url}/chat/completions",
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_content},
                    ],
                    "temperature": self.temperature,
                    "max_tokens": self.max_tokens,
                },
            )
            response.raise_for_status()

        except httpx.TimeoutException as e:
            raise GenerationError(f"Generation request timed out after {self.timeout}s") from e

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            body = e.response.text[:500]
            if status in (400, 413) and _CONTEXT_LENGTH_RE.search(body):
                raise InputTooLongError(f"Input rejected as too long: {body[:200]}") from e
            raise GenerationError(f"HTTP error: {status} - {body[:200]}") from e

        except httpx.HTTPError as e:
            raise GenerationError(f"Generation request failed: {e}") from e

        try:
            choice = response.json()["choices"][0]
            content = choice["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GenerationError(f"Malformed generation response: {e}") from e

        if choice.get("finish_reason") == "length":
            logger.warning(f"Output hit the {self.max_tokens} token budget and was truncated")

        return content or ""

    def close(self):
        """Close HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
