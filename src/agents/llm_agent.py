# src/agents/llm_agent.py
from openai import OpenAI, RateLimitError, OpenAIError
from pydantic import ValidationError
from typing import List, Optional
from src.config.settings import Settings
from src.models.errors import AIServiceError
from src.models.schemas import ClusterRecommendation
import json
import re
import time
import logging

logger = logging.getLogger(__name__)

class ChatAgent:
    """OpenAI Chatbot client."""

    def __init__(self, config: Settings):
        self.config = config
        self.client = OpenAI(api_key=config.openai_api_key)
        self.model = config.openai_llm_model

    def chat(self, messages: List[dict], response_format: Optional[dict] = None) -> str:
        """
        Send a list of messages to the OpenAI chat model and get the response.
        Uses exponential backoff retry logic for rate limit errors.

        Args:
            messages: List of message dicts (e.g., [{"role": "user", "content": "Hello"}])
            response_format: Optional response format (e.g., {"type": "json_object"})

        Returns:
            The assistant's reply as a string.
        """
        max_retries = 5
        base_delay = 1.0  # Start with 1 second delay

        kwargs = {"model": self.model, "messages": messages}
        if response_format:
            kwargs["response_format"] = response_format

        for attempt in range(max_retries):
            try:
                response = self.client.chat.completions.create(**kwargs)
                return response.choices[0].message.content
            except RateLimitError:
                if attempt == max_retries - 1:
                    # Last attempt, raise the error
                    raise

                # Calculate exponential backoff delay
                delay = base_delay * (2 ** attempt)
                logger.warning(f"Rate limit hit on chat completion. Retrying in {delay}s... (attempt {attempt + 1}/{max_retries})")
                time.sleep(delay)

    def chat_single(self, prompt: str, response_format: Optional[dict] = None) -> str:
        """
        Send a single prompt to the OpenAI chat model and get the response.

        Args:
            prompt: The user's prompt as a string.
            response_format: Optional response format passed through to chat().

        Returns:
            The assistant's reply as a string.
        """
        messages = [{"role": "user", "content": prompt}]
        return self.chat(messages, response_format=response_format)


class ClusterRecommender:
    """Ask the LLM for an improvement recommendation for a negative-feedback cluster."""

    MAX_SAMPLES = 50

    def __init__(self, config: Settings, agent: Optional[ChatAgent] = None):
        self.agent = agent or ChatAgent(config)

    def build_prompt(self, feedback_texts: List[str], cluster_label: str) -> str:
        complaints = "; ".join(text for text in feedback_texts[:self.MAX_SAMPLES] if text)

        return f"""Users are complaining about: "{complaints}"

            Cluster theme: "{cluster_label}"

            Suggest a product or UX improvement. Estimate the impact (high/medium/low) and urgency (immediate/soon/later).

            Guidelines:
            - High impact: Affects core functionality, revenue, or user retention
            - Medium impact: Affects user experience but not critical
            - Low impact: Nice-to-have improvements

            - Immediate: Fix within 1-2 weeks (critical issues)
            - Soon: Fix within 1-2 months (important improvements)
            - Later: Fix when resources allow (minor issues)

            Respond in JSON format:
            {{
              "recommendation": "specific actionable recommendation with technical details",
              "impact": "high | medium | low",
              "urgency": "immediate | soon | later",
              "cluster_summary": "concise summary of what users are complaining about"
            }}"""

    def recommend(self, feedback_texts: List[str], cluster_label: str) -> ClusterRecommendation:
        """
        Get a structured recommendation for one cluster.

        Args:
            feedback_texts: Feedback descriptions of the cluster's insights
            cluster_label: Label derived from the cluster's keywords

        Returns:
            Validated recommendation

        Raises:
            AIServiceError: If the service fails or the answer is not the expected JSON
        """
        prompt = self.build_prompt(feedback_texts, cluster_label)

        try:
            response = self.agent.chat_single(prompt, response_format={"type": "json_object"})
        except OpenAIError as e:
            raise AIServiceError(f"Chat completion failed for cluster '{cluster_label}': {e}") from e

        if not response:
            raise AIServiceError(f"Empty response for cluster '{cluster_label}'")

        payload = self._parse_json_object(response)
        if payload is None:
            raise AIServiceError(f"Response for cluster '{cluster_label}' is not a JSON object: {response[:200]}")

        try:
            return ClusterRecommendation.model_validate(payload)
        except ValidationError as e:
            raise AIServiceError(f"Malformed recommendation for cluster '{cluster_label}': {e}") from e

    def _parse_json_object(self, response: str) -> Optional[dict]:
        """Parse LLM response as a JSON object with a fallback for surrounding text."""
        # Strategy 1: Direct JSON parsing
        try:
            # Remove markdown code blocks if present
            cleaned = re.sub(r'```json\s*|\s*```', '', response).strip()
            payload = json.loads(cleaned)
            if isinstance(payload, dict):
                return payload
        except json.JSONDecodeError:
            pass

        # Strategy 2: Extract object from text
        match = re.search(r'\{.*\}', response, re.DOTALL)
        if match:
            try:
                payload = json.loads(match.group(0))
                if isinstance(payload, dict):
                    return payload
            except json.JSONDecodeError:
                pass

        return None
