import os
import time
import base64
import logging
from typing import Dict, List, Optional, Sequence

import anthropic

from api_keys import key_pool, is_rate_limit_error, is_retryable_error, key_fingerprint

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

EXTRACTION_MODEL = os.getenv('EXTRACTION_MODEL', 'claude-sonnet-4-20250514')

MIME_TYPES = {
    'pdf': 'application/pdf',
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'png': 'image/png',
}
SUPPORTED_MIME_TYPES = ['image/jpeg', 'image/png', 'application/pdf']


def guess_media_type(filename: str) -> str:
    """Infer the media type from a file extension"""
    extension = (filename or '').rsplit('.', 1)[-1].lower() if '.' in (filename or '') else ''
    if extension not in MIME_TYPES:
        raise ValueError(f"Unsupported file type: {extension or filename}")
    return MIME_TYPES[extension]


def document_block(content: bytes, media_type: str) -> Dict:
    """Build an Anthropic content block for a PDF or image"""
    if media_type not in SUPPORTED_MIME_TYPES:
        raise ValueError(f"Unsupported media type: {media_type}")

    data = base64.b64encode(content).decode('utf-8')
    block_type = 'document' if media_type == 'application/pdf' else 'image'

    return {
        "type": block_type,
        "source": {
            "type": "base64",
            "media_type": media_type,
            "data": data
        }
    }


class ExtractionClient:
    """Calls the Messages API, rotating through the key pool on failures."""

    def __init__(self, pool=None, model=EXTRACTION_MODEL, max_tokens=8192,
                 temperature=0.2, max_attempts=3, retry_delay=1.0, sleep=time.sleep):
        self.pool = pool if pool is not None else key_pool
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.api_calls = 0

    def _client_for(self, api_key: str):
        return anthropic.Anthropic(api_key=api_key)

    def complete(self, prompt: str, documents: Sequence[Dict] = (), system: Optional[str] = None) -> Dict:
        """
        Send one prompt (plus optional document blocks) and return the text.

        Rate-limit failures are charged to the key that made the call and the
        next attempt picks the next available key. 503 / overloaded errors are
        retried after a wait; any other error ends the call.
        """
        last_error = None

        for attempt in range(self.max_attempts):
            api_key = self.pool.get_next_available_key()
            if not api_key:
                return {"success": False, "error": "No API keys configured"}

            try:
                content: List[Dict] = list(documents) + [{"type": "text", "text": prompt}]
                kwargs = {
                    "model": self.model,
                    "max_tokens": self.max_tokens,
                    "temperature": self.temperature,
                    "messages": [{"role": "user", "content": content}],
                }
                if system:
                    kwargs["system"] = system

                message = self._client_for(api_key).messages.create(**kwargs)

                self.total_input_tokens += message.usage.input_tokens
                self.total_output_tokens += message.usage.output_tokens
                self.api_calls += 1

                text = "".join(
                    block.text for block in message.content if block.type == "text"
                ).strip()

                if not text:
                    raise ValueError("No text generated from the model")

                self.pool.reset(api_key)

                return {
                    "success": True,
                    "text": text,
                    "token_usage": {
                        "input_tokens": message.usage.input_tokens,
                        "output_tokens": message.usage.output_tokens
                    },
                    "api_key": key_fingerprint(api_key)
                }

            except Exception as e:
                last_error = e
                logger.error(f"Extraction attempt {attempt + 1}/{self.max_attempts} failed: {e}")

                if is_rate_limit_error(e):
                    self.pool.mark_failure(api_key)
                elif not is_retryable_error(e):
                    break

                if attempt < self.max_attempts - 1:
                    print(f"🔄 Retrying with next API key (attempt {attempt + 2}/{self.max_attempts})")
                    self._sleep(self.retry_delay)

        return {
            "success": False,
            "error": str(last_error) if last_error else "Max retries exceeded"
        }
