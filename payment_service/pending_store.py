"""
Single-slot persistent record of the in-flight payment attempt, plus the last
resolved outcome. Both live under one well-known Redis key each.
"""
import logging
from typing import Optional

import redis
from pydantic import ValidationError

from common.error_handling import LocalError
from common.redis_client import RedisClient
from common.schemas import OutcomeRecord, PendingPayload

logger = logging.getLogger(__name__)

class PendingPayloadStore:
    def __init__(self, redis_client: RedisClient, payload_key: str, outcome_key: str):
        self.redis = redis_client
        self.payload_key = payload_key
        self.outcome_key = outcome_key

    def save(self, payload: PendingPayload) -> None:
        """Overwrite the slot. A previous attempt's recovery data is lost."""
        try:
            self.redis.set_json(self.payload_key, payload.model_dump(mode="json"))
        except redis.RedisError as e:
            raise LocalError("Could not persist pending payment", original_error=e)
        logger.info(f"Stored pending payload for {payload.transaction_id}")

    def load(self) -> Optional[PendingPayload]:
        try:
            raw = self.redis.get_json(self.payload_key)
        except redis.RedisError as e:
            raise LocalError("Could not read pending payment", original_error=e)
        if raw is None:
            return None
        try:
            return PendingPayload.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed pending payload: {e.error_count()} errors")
            return None

    def load_for(self, transaction_id: str) -> Optional[PendingPayload]:
        payload = self.load()
        if payload is not None and payload.transaction_id == transaction_id:
            return payload
        return None

    def clear(self) -> None:
        try:
            self.redis.delete(self.payload_key)
        except redis.RedisError as e:
            raise LocalError("Could not clear pending payment", original_error=e)

    def record_outcome(self, outcome: OutcomeRecord) -> None:
        try:
            self.redis.set_json(self.outcome_key, outcome.model_dump(mode="json"))
        except redis.RedisError as e:
            raise LocalError("Could not persist payment outcome", original_error=e)

    def last_outcome(self) -> Optional[OutcomeRecord]:
        try:
            raw = self.redis.get_json(self.outcome_key)
        except redis.RedisError as e:
            raise LocalError("Could not read payment outcome", original_error=e)
        if raw is None:
            return None
        try:
            return OutcomeRecord.model_validate(raw)
        except ValidationError:
            logger.warning("Ignoring malformed outcome record")
            return None
