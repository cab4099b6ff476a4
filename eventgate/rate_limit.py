import math
import time
from typing import Optional

BUCKET_TTL_SECONDS = 3600


async def token_bucket(redis, key: str, capacity: int, refill_per_sec: float,
                       now: Optional[float] = None) -> tuple[bool, int]:
    """
    Take one token from the bucket stored at `rl:<key>`.

    Returns `(allowed, retry_after)` where `retry_after` is the number of
    whole seconds until a token is available again (0 when allowed).
    """
    now = time.time() if now is None else now
    bucket_key = f"rl:{key}"

    # Read-modify-write; a burst can overshoot by a token or two.
    state = await redis.hgetall(bucket_key)
    stored = float(state.get("tokens", capacity))
    since = max(0.0, now - float(state.get("last", now)))
    available = min(float(capacity), stored + since * refill_per_sec)

    if available >= 1.0:
        available -= 1.0
        retry_after = 0
    else:
        retry_after = math.ceil((1.0 - available) / refill_per_sec) if refill_per_sec > 0 else BUCKET_TTL_SECONDS

    await redis.hset(bucket_key, mapping={"tokens": available, "last": now})
    await redis.expire(bucket_key, BUCKET_TTL_SECONDS)
    return retry_after == 0, retry_after
