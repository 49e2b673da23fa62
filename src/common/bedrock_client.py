#!/usr/bin/env python3
"""
Bedrock text generation client for the lead email pipeline.
Provides retry with backoff and error classification by AWS error code.
"""

import json
import logging
import os
import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError, ParamValidationError

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"

_ACCESS_CODES = ("AccessDeniedException", "UnrecognizedClientException")
_VALIDATION_CODES = ("ValidationException", "ResourceNotFoundException")


class BedrockError(Exception):
    """Base exception for Bedrock-related errors."""

    pass


class BedrockAccessError(BedrockError):
    """Raised when Bedrock access is denied or credentials are invalid."""

    pass


class BedrockValidationError(BedrockError):
    """Raised when Bedrock request validation fails."""

    pass


class BedrockNetworkError(BedrockError):
    """Raised when network connectivity to Bedrock fails."""

    pass


class BedrockResponseError(BedrockError):
    """Raised when a Bedrock response body cannot be decoded."""

    pass


def _error_code(error: Exception) -> str:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code", "")
    return ""


def classify_bedrock_error(error: Exception, model_ref: str) -> BedrockError:
    """Map a botocore failure onto the BedrockError hierarchy."""
    code = _error_code(error)
    if code in _ACCESS_CODES:
        return BedrockAccessError(
            f"Bedrock access denied for {model_ref}. "
            "Verify bedrock:InvokeModel permissions and model access."
        )
    if code in _VALIDATION_CODES:
        return BedrockValidationError(f"Bedrock validation error: {error}")
    if isinstance(error, BotoCoreError):
        return BedrockNetworkError(f"Bedrock network error: {error}")
    return BedrockError(f"Bedrock API error: {error}")


class StandardizedBedrockClient:
    """Bedrock runtime wrapper with consistent retry and error handling.

    Either a plain model id or an inference profile ARN may be used as the model
    reference. When both are provided, the ARN wins.
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        inference_profile_arn: Optional[str] = None,
        region: str = "us-east-1",
        client=None,
    ):
        self.model_id = model_id
        self.inference_profile_arn = inference_profile_arn
        self.region = region

        if not (model_id or inference_profile_arn):
            raise BedrockValidationError("A Bedrock model id or inference profile ARN is required")
        if inference_profile_arn and not inference_profile_arn.startswith("arn:aws:bedrock:"):
            raise BedrockValidationError(
                f"Invalid inference profile ARN format: {inference_profile_arn}. "
                "Expected format: arn:aws:bedrock:region:account:inference-profile/profile-id"
            )

        if client is None:
            # Check for offline mode
            if os.getenv("NO_NETWORK") == "1":
                raise BedrockNetworkError(
                    "NO_NETWORK=1 is set. Cannot initialize Bedrock client in offline mode."
                )
            try:
                client = boto3.client("bedrock-runtime", region_name=region)
            except (ClientError, BotoCoreError) as e:
                raise BedrockAccessError(f"Failed to initialize Bedrock client: {e}") from e
        self.client = client

    @property
    def model_ref(self) -> str:
        return self.inference_profile_arn or self.model_id or ""

    def _invoke_once(self, body: dict) -> Tuple[str, dict]:
        """Invoke Bedrock once.

        Returns:
            Tuple of (response_text, response_metadata).

        Raises:
            BedrockResponseError: The response body is not the expected JSON document.
        """
        response = self.client.invoke_model(
            modelId=self.model_ref,
            body=json.dumps(body),
            contentType="application/json",
            accept="application/json",
        )

        try:
            response_body = json.loads(response["body"].read())
            text_parts = [
                part.get("text", "")
                for part in response_body.get("content", [])
                if isinstance(part, dict) and part.get("type", "text") == "text"
            ]
            response_metadata = {
                "ResponseMetadata": response.get("ResponseMetadata", {}),
                "model_id": self.model_ref,
                "stop_reason": response_body.get("stop_reason"),
                "usage": response_body.get("usage", {}),
            }
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise BedrockResponseError(
                f"Unreadable Bedrock response from {self.model_ref}: {e.__class__.__name__}: {e}"
            ) from e
        return "".join(text_parts), response_metadata

    def invoke_model(
        self,
        messages: List[Dict[str, Any]],
        max_tokens: int = 2048,
        temperature: float = 0.1,
        max_retries: int = 3,
        system: Optional[str] = None,
    ) -> str:
        """
        Invoke Bedrock model with retry and backoff.

        Args:
            messages: List of message objects in Anthropic format
            max_tokens: Maximum tokens to generate
            temperature: Temperature for response generation
            max_retries: Maximum number of attempts
            system: Optional system prompt

        Returns:
            Generated text response

        Raises:
            BedrockError: For various Bedrock-related failures. An unreadable
                response body raises BedrockResponseError and is not retried.
        """
        body: Dict[str, Any] = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": messages,
        }
        if system:
            body["system"] = system

        last_exception: Optional[Exception] = None

        for attempt in range(max_retries):
            try:
                response_text, _ = self._invoke_once(body)
                return response_text

            except ParamValidationError as e:
                raise BedrockValidationError(f"Parameter validation failed: {e}") from e

            except (ClientError, BotoCoreError) as e:
                last_exception = e

            if _error_code(last_exception) in _ACCESS_CODES + _VALIDATION_CODES:
                break

            if attempt < max_retries - 1:
                wait_time = (2**attempt) + random.uniform(0, 1)
                logger.warning(
                    f"Bedrock call failed (attempt {attempt + 1}/{max_retries}): "
                    f"{last_exception}; retrying in {wait_time:.1f}s"
                )
                time.sleep(wait_time)
            else:
                logger.error(f"Final Bedrock attempt failed: {last_exception}")

        raise classify_bedrock_error(last_exception, self.model_ref) from last_exception

    def simple_invoke(
        self,
        prompt: str,
        max_tokens: int = 2048,
        temperature: float = 0.1,
        system: Optional[str] = None,
    ) -> str:
        """Single-message invoke for convenience."""
        messages = [{"role": "user", "content": prompt}]
        return self.invoke_model(messages, max_tokens, temperature, system=system)
