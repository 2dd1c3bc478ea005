import hashlib
import threading
import time

try:
    import redis
except Exception:
    redis = None


RATE_STATE_CLEANUP_INTERVAL_SEC = 60


class FailureRateLimiter:
    """Blocks a client IP after repeated failed Basic Auth attempts."""

    def __init__(self, backend='memory', window_sec=300, max_attempts=8, block_sec=600,
                 redis_url='redis://127.0.0.1:6379/0', redis_socket_timeout_sec=1.0,
                 key_prefix='livenote:auth_rl'):
        if backend not in {'memory', 'redis'}:
            raise RuntimeError("auth rate limit backend must be one of: memory / redis")
        if backend == 'redis' and redis is None:
            raise RuntimeError("the redis auth rate limit backend needs the redis Python package")
        if window_sec <= 0 or max_attempts <= 0 or block_sec <= 0:
            raise RuntimeError("auth rate limit window, attempts and block time must be greater than 0")
        if not key_prefix:
            raise RuntimeError("auth rate limit key prefix must not be empty")

        self.backend = backend
        self.window_sec = window_sec
        self.max_attempts = max_attempts
        self.block_sec = block_sec
        self.redis_url = redis_url
        self.redis_socket_timeout_sec = redis_socket_timeout_sec
        self.key_prefix = key_prefix

        self._state = {}
        self._lock = threading.Lock()
        self._last_cleanup = 0.0
        self._redis_client = None

    # ------------------- redis backend -------------------
    def _get_redis_client(self):
        if self._redis_client is None:
            self._redis_client = redis.Redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=self.redis_socket_timeout_sec,
            )
        return self._redis_client

    def _keys(self, ip):
        ip_token = hashlib.sha256(ip.encode('utf-8')).hexdigest()[:32]
        return f"{self.key_prefix}:fail:{ip_token}", f"{self.key_prefix}:block:{ip_token}"

    def _retry_after_redis(self, ip):
        _, block_key = self._keys(ip)
        ttl = self._get_redis_client().ttl(block_key)
        if ttl is None or ttl < 0:
            return 0
        return int(ttl)

    def _register_failure_redis(self, ip):
        client = self._get_redis_client()
        fail_key, block_key = self._keys(ip)

        block_ttl = client.ttl(block_key)
        if block_ttl is not None and block_ttl > 0:
            return {"blocked": True, "retry_after": int(block_ttl), "attempts": self.max_attempts}

        pipe = client.pipeline()
        pipe.incr(fail_key)
        pipe.ttl(fail_key)
        attempts, ttl = pipe.execute()
        attempts = int(attempts)

        if ttl is None or int(ttl) < 0:
            client.expire(fail_key, self.window_sec)

        if attempts >= self.max_attempts:
            pipe = client.pipeline()
            pipe.setex(block_key, self.block_sec, '1')
            pipe.delete(fail_key)
            pipe.execute()
            return {"blocked": True, "retry_after": self.block_sec, "attempts": attempts}

        return {"blocked": False, "retry_after": 0, "attempts": attempts}

    def ping(self):
        if self.backend != 'redis':
            return
        try:
            self._get_redis_client().ping()
        except Exception as exc:
            raise RuntimeError(f"redis auth rate limit backend unavailable: {exc}") from exc

    # ------------------- memory backend -------------------
    def _cleanup(self, now_ts):
        if now_ts - self._last_cleanup < RATE_STATE_CLEANUP_INTERVAL_SEC:
            return

        stale_after = self.window_sec + self.block_sec + 60
        for ip in list(self._state):
            state = self._state[ip]
            if state['blocked_until'] <= now_ts and (now_ts - state['last_seen']) > stale_after:
                del self._state[ip]
        self._last_cleanup = now_ts

    def retry_after(self, ip):
        if self.backend == 'redis':
            return self._retry_after_redis(ip)

        now_ts = time.time()
        with self._lock:
            self._cleanup(now_ts)
            state = self._state.get(ip)
            if not state or state['blocked_until'] <= now_ts:
                return 0
            return int(state['blocked_until'] - now_ts) + 1

    def register_failure(self, ip):
        if self.backend == 'redis':
            return self._register_failure_redis(ip)

        now_ts = time.time()
        with self._lock:
            self._cleanup(now_ts)
            state = self._state.setdefault(ip, {"fails": [], "blocked_until": 0, "last_seen": now_ts})
            state['last_seen'] = now_ts

            if state['blocked_until'] > now_ts:
                retry_after = int(state['blocked_until'] - now_ts) + 1
                return {"blocked": True, "retry_after": retry_after, "attempts": len(state['fails'])}

            valid_after = now_ts - self.window_sec
            state['fails'] = [ts for ts in state['fails'] if ts >= valid_after]
            state['fails'].append(now_ts)
            attempts = len(state['fails'])

            if attempts >= self.max_attempts:
                state['blocked_until'] = now_ts + self.block_sec
                state['fails'] = []
                return {"blocked": True, "retry_after": self.block_sec, "attempts": attempts}

            return {"blocked": False, "retry_after": 0, "attempts": attempts}

    def clear(self, ip):
        if self.backend == 'redis':
            self._get_redis_client().delete(*self._keys(ip))
            return

        with self._lock:
            self._state.pop(ip, None)
