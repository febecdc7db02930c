"""
FOREMAN INTELLIGENCE - Structured LLM Interface

Provides a strictly typed interface for LLM generation.
Enforces msgspec schema compliance via JSON Mode + Validation.

Design:
- JSON Mode (Prompt) -> Output -> msgspec.decode
- Uses msgspec.json.schema() for ground-truth prompt generation.
- Agnostic to underlying provider (OpenAI, Anthropic, etc.) via LiteLLM.

Architecture:
    Capability (planner / coder / verifier)
        |
        v
    StructuredLLM.generate(prompt, schema=T)
        |
        v
    [Inject JSON Schema into System Prompt]
        |
        v
    LiteLLM.completion(response_format=json_object)
        |
        v
    [msgspec.json.decode() - Strict Validation]
        |
        v
    Return T (or retry on ValidationError)
"""
import os
import json
import logging
import msgspec
from typing import Type, TypeVar, Optional
import litellm
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

logger = logging.getLogger(__name__)

# Generic type for return values
T = TypeVar("T", bound=msgspec.Struct)

DEFAULT_MODEL = "anthropic/claude-sonnet-4-5-20250929"


# =============================================================================
# EXCEPTIONS
# =============================================================================

class LLMError(Exception):
    """Base exception for LLM failures."""
    pass


class ValidationError(LLMError):
    """Raised when LLM output does not match the required schema."""
    pass


class RateLimitError(LLMError):
    """Raised when rate limited by the provider."""
    pass


# =============================================================================
# STRUCTURED LLM
# =============================================================================

class StructuredLLM:
    """
    A wrapper around LiteLLM that enforces structured outputs.

    1. Inject msgspec-generated JSON Schema into system prompt
    2. Use response_format=json_object where supported
    3. Validate response with msgspec.json.decode()
    4. Retry on validation failures (up to 3 attempts)

    Usage:
        llm = StructuredLLM(model="openai/gpt-4o")
        plan = llm.generate(
            system_prompt=PLANNER_SYSTEM_PROMPT,
            user_prompt=build_planner_prompt(objective, constraints),
            schema=PlanOutput,
        )
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.0,
        max_tokens: int = 16384,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

        # Disable LiteLLM's verbose logging
        litellm.set_verbose = False

    def _get_schema_prompt(self, schema: Type[msgspec.Struct]) -> str:
        """JSON Schema (Draft 2020-12) for the Struct, pretty-printed for the prompt."""
        return json.dumps(msgspec.json.schema(schema), indent=2)

    def _build_system_prompt(self, base_prompt: str, schema: Type[msgspec.Struct]) -> str:
        """Build the full system prompt with schema injection."""
        schema_json = self._get_schema_prompt(schema)

        return f"""{base_prompt}

# OUTPUT CONTRACT
You ONLY output JSON.

Your output must strictly adhere to this JSON Schema:
```json
{schema_json}
```

CRITICAL RULES:
1. Output ONLY valid JSON - no markdown, no explanation, no preamble.
2. All required fields must be present.
3. Types must match exactly (strings are strings, numbers are numbers).
4. If a field is a List, it must be a JSON array.
"""

    def _clean_response(self, content: str) -> str:
        """Clean LLM response of common formatting issues."""
        content = (content or "").strip()

        # Remove markdown code blocks
        if content.startswith("```json"):
            content = content[7:]
        elif content.startswith("```"):
            content = content[3:]

        if content.endswith("```"):
            content = content[:-3]

        return content.strip()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(ValidationError),
        reraise=True,
    )
    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: Type[T],
    ) -> T:
        """
        Generate a structured response matching the provided schema.

        Raises:
            ValidationError: If schema validation fails after 3 attempts
            RateLimitError: If rate limited by provider
            LLMError: If the LLM API call fails
        """
        full_system_prompt = self._build_system_prompt(system_prompt, schema)

        try:
            response = litellm.completion(
                model=self.model,
                messages=[
                    {"role": "system", "content": full_system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
                # Ignore unsupported params for provider flexibility
                drop_params=True,
            )
            content = self._clean_response(response.choices[0].message.content)
            return msgspec.json.decode(content.encode("utf-8"), type=schema)

        except msgspec.ValidationError as e:
            logger.warning(f"{schema.__name__} failed schema validation: {e}")
            raise ValidationError(f"Schema validation failed: {e}") from e
        except msgspec.DecodeError as e:
            logger.warning(f"{schema.__name__} response was not valid JSON: {e}")
            raise ValidationError(f"JSON decode failed: {e}") from e
        except litellm.RateLimitError as e:
            raise RateLimitError(f"Rate limited: {e}") from e
        except Exception as e:
            # API outage, network error, etc.
            raise LLMError(f"LLM generation failed: {e}") from e


# =============================================================================
# GLOBAL INSTANCE
# =============================================================================

_llm_instance: Optional[StructuredLLM] = None


def get_llm(model: Optional[str] = None) -> StructuredLLM:
    """
    Get the global LLM instance.

    Configurable via environment variables:
    - FOREMAN_LLM_MODEL: Model identifier (default: anthropic/claude-sonnet-4-5-20250929)
    - FOREMAN_LLM_TEMPERATURE: Temperature (default: 0.0)

    Note: LiteLLM requires provider prefix (anthropic/, openai/, gemini/, etc.)
    """
    global _llm_instance
    if _llm_instance is None:
        model = model or os.getenv("FOREMAN_LLM_MODEL", DEFAULT_MODEL)
        temperature = float(os.getenv("FOREMAN_LLM_TEMPERATURE", "0.0"))
        _llm_instance = StructuredLLM(model=model, temperature=temperature)
    return _llm_instance


def set_llm(llm: Optional[StructuredLLM]) -> None:
    """
    Set the global LLM instance.

    Useful for testing with mock LLMs or different configurations.
    """
    global _llm_instance
    _llm_instance = llm


def reset_llm() -> None:
    """Reset the global LLM instance (forces re-initialization on next get_llm())."""
    global _llm_instance
    _llm_instance = None
