"""
Shared fixtures for kafka_retry tests.

Provides ConsumerRecord builders shaped like getmany() output; no broker
is required.
"""

from typing import Dict, Optional

import pytest
from aiokafka.structs import ConsumerRecord

NOW = 1_700_000_000_000


def create_consumer_record(
    topic: str = "orders",
    value: Optional[bytes] = b'{"order_id": "o-1"}',
    key: Optional[bytes] = b"o-1",
    headers: Optional[Dict[str, str]] = None,
    partition: int = 0,
    offset: int = 0,
) -> ConsumerRecord:
    """Create a ConsumerRecord as delivered by getmany()."""
    return ConsumerRecord(
        topic=topic,
        partition=partition,
        offset=offset,
        timestamp=NOW,
        timestamp_type=0,
        key=key,
        value=value,
        headers=[(k, v.encode("utf-8")) for k, v in (headers or {}).items()],
        checksum=None,
        serialized_key_size=len(key) if key else 0,
        serialized_value_size=len(value) if value else 0,
    )


@pytest.fixture
def make_record():
    """Factory fixture for ConsumerRecords."""
    return create_consumer_record
