# api_keys.py
import os
import time
import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

import anthropic

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

RATE_LIMIT_COOLDOWN = 60  # seconds
MAX_FAILURES = 3  # consecutive failures before a key cools down
INITIAL_RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 10.0


@dataclass
class KeyStatus:
    """Rate-limit bookkeeping for a single API key."""
    last_used: float = 0.0
    failure_count: int = 0
    cooldown_until: float = 0.0


def load_api_keys() -> List[str]:
    """Read the key pool from ANTHROPIC_API_KEYS, falling back to ANTHROPIC_API_KEY"""
    raw = os.getenv('ANTHROPIC_API_KEYS', '')
    keys = [k.strip() for k in raw.split(',') if k.strip()]

    if not keys and os.getenv('ANTHROPIC_API_KEY'):
        keys = [os.getenv('ANTHROPIC_API_KEY')]

    # Preserve order, drop duplicates
    seen = set()
    unique_keys = []
    for key in keys:
        if key not in seen:
            seen.add(key)
            unique_keys.append(key)
    return unique_keys


def key_fingerprint(key: str) -> str:
    """Short, non-reversible label for logs and health output"""
    return hashlib.sha256(key.encode('utf-8')).hexdigest()[:8]


class ApiKeyPool:
    """Pool of API keys rotated on rate-limit failures."""

    def __init__(self, keys, cooldown=RATE_LIMIT_COOLDOWN, max_failures=MAX_FAILURES, clock=None):
        self.keys = list(keys)
        self.cooldown = cooldown
        self.max_failures = max_failures
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._status: Dict[str, KeyStatus] = {key: KeyStatus() for key in self.keys}
        self.current_index = 0

    def __len__(self):
        return len(self.keys)

    def get_next_available_key(self) -> Optional[str]:
        """
        Return the first key that is not cooling down and has not hit the
        failure limit. When every key is exhausted the pool is reset and the
        first key is returned.
        """
        if not self.keys:
            return None

        with self._lock:
            now = self._clock()

            for index, key in enumerate(self.keys):
                status = self._status[key]

                if now < status.cooldown_until:
                    continue

                if now - status.last_used > self.cooldown:
                    status.failure_count = 0

                if status.failure_count < self.max_failures:
                    self.current_index = index
                    return key

            logger.warning("All API keys exhausted, resetting pool")
            for key in self.keys:
                self._status[key] = KeyStatus(last_used=now)

            self.current_index = 0
            return self.keys[0]

    def mark_failure(self, key: str):
        """Record a failed call; the key cools down once it reaches the failure limit"""
        with self._lock:
            status = self._status.get(key)
            if status is None:
                return

            now = self._clock()
            status.failure_count += 1
            status.last_used = now

            if status.failure_count >= self.max_failures:
                status.cooldown_until = now + self.cooldown
                print(f"⚠️  API key {key_fingerprint(key)} in cooldown for {self.cooldown}s")

    def reset(self, key: str):
        with self._lock:
            if key in self._status:
                self._status[key] = KeyStatus(last_used=self._clock())

    def rotate(self, failed_key: Optional[str] = None) -> Optional[str]:
        """
        Exponential-cooldown rotation: the failed key cools down for
        2**failure_count minutes, then the next key (round-robin) that is not
        cooling down is returned. If all keys are cooling down the one whose
        cooldown ends first is used.
        """
        if not self.keys:
            return None

        with self._lock:
            now = self._clock()

            if failed_key in self._status:
                status = self._status[failed_key]
                status.failure_count += 1
                status.cooldown_until = now + (2 ** status.failure_count) * 60

            for _ in range(len(self.keys)):
                self.current_index = (self.current_index + 1) % len(self.keys)
                key = self.keys[self.current_index]
                status = self._status[key]

                if now >= status.cooldown_until:
                    status.last_used = now
                    return key

            best_key = min(self.keys, key=lambda k: self._status[k].cooldown_until)
            self.current_index = self.keys.index(best_key)
            return best_key

    def get_status(self, key: str) -> Optional[KeyStatus]:
        with self._lock:
            status = self._status.get(key)
            return KeyStatus(status.last_used, status.failure_count, status.cooldown_until) if status else None

    def status(self) -> List[Dict]:
        """Snapshot for health checks (fingerprints only)"""
        now = self._clock()
        with self._lock:
            return [
                {
                    "key": key_fingerprint(key),
                    "failure_count": self._status[key].failure_count,
                    "cooling_down": now < self._status[key].cooldown_until,
                }
                for key in self.keys
            ]


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================

def is_rate_limit_error(error) -> bool:
    """429 / quota errors count against the key that made the call"""
    if isinstance(error, anthropic.RateLimitError):
        return True
    message = str(error).lower()
    return '429' in message or 'quota' in message


def is_retryable_error(error) -> bool:
    message = str(error).lower()
    return '503' in message or 'overloaded' in message or 'rate limit' in message


def get_retry_delay(attempt: int) -> float:
    """Exponential backoff in seconds, capped at MAX_RETRY_DELAY"""
    return min(INITIAL_RETRY_DELAY * (2 ** attempt), MAX_RETRY_DELAY)


# Shared pool used by the extraction modules
key_pool = ApiKeyPool(load_api_keys())
