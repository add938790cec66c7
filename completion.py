"""Text-completion clients used by the analysis pipeline.

The pipeline only needs ``complete(prompt) -> str``; tests substitute a fixed
fixture for the real providers.
"""
import anthropic
import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from config import APIConfig
from errors import ConfigurationError, RemoteError
from logger import get_logger, log_metrics

logger = get_logger(__name__)


class CompletionClient:
    provider = "none"

    def complete(self, prompt: str) -> str:
        raise NotImplementedError


class GeminiCompletionClient(CompletionClient):
    provider = "gemini"

    def __init__(self, api_key: str, model: str = "gemini-2.0-flash", temperature: float = 0.2):
        genai.configure(api_key=api_key)
        self.model_name = model
        self.model = genai.GenerativeModel(model)
        self.temperature = temperature

    @log_metrics
    def complete(self, prompt: str) -> str:
        try:
            response = self.model.generate_content(
                prompt,
                generation_config=genai.types.GenerationConfig(
                    temperature=self.temperature,
                    response_mime_type="application/json",
                ),
            )
            return response.text
        except (google_exceptions.GoogleAPIError, ValueError) as e:
            logger.error("Gemini completion failed", model=self.model_name, error=str(e))
            raise RemoteError(f"Gemini completion failed: {e}", provider=self.provider,
                              model=self.model_name) from e


class ClaudeCompletionClient(CompletionClient):
    provider = "anthropic"

    def __init__(self, api_key: str, model: str = "claude-3-7-sonnet-20250219", max_tokens: int = 2000):
        self.claude = anthropic.Anthropic(api_key=api_key)
        self.model_name = model
        self.max_tokens = max_tokens

    @log_metrics
    def complete(self, prompt: str) -> str:
        try:
            response = self.claude.messages.create(
                model=self.model_name,
                max_tokens=self.max_tokens,
                messages=[{
                    "role": "user",
                    "content": prompt
                }]
            )
        except anthropic.APIError as e:
            logger.error("Claude completion failed", model=self.model_name, error=str(e))
            raise RemoteError(f"Claude completion failed: {e}", provider=self.provider,
                              model=self.model_name) from e
        return "".join(block.text for block in response.content if getattr(block, "type", "text") == "text")


def get_completion_client(config: APIConfig) -> CompletionClient:
    if config.llm_provider == "gemini":
        return GeminiCompletionClient(config.llm_api_key, model=config.llm_model)
    if config.llm_provider == "anthropic":
        return ClaudeCompletionClient(config.llm_api_key, model=config.llm_model)
    raise ConfigurationError(f"Unsupported LLM provider {config.llm_provider!r}")
