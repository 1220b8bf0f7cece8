"""Lua script registration for the filling bucket.

Scripts are invoked by SHA with EVALSHA so the body is not resent on every
call. Redis forgets loaded scripts on restart or SCRIPT FLUSH; when that
happens the body is loaded again and the call retried once.
"""

import hashlib
from typing import Any, Sequence

from redis.exceptions import NoScriptError

from bucketgate.app.core.logging import get_log_context, get_logger
from bucketgate.app.exceptions import RoutineUnknownError, ScriptHashMismatchError

logger = get_logger(__name__)


class ScriptCache:
    """Tracks whether a Lua script is registered with Redis.

    Attributes:
        body: Lua source of the script
        sha: SHA1 hex digest of the source, as Redis computes it
        registered: False until an EVALSHA has succeeded, and again after
            Redis reports the script unknown
        load_count: Number of SCRIPT LOAD calls issued
    """

    def __init__(self, body: str) -> None:
        self.body = body
        self.sha = hashlib.sha1(body.encode("utf-8")).hexdigest()
        self.registered = False
        self.load_count = 0

    async def register(self, client: Any) -> str:
        """Load the script body into Redis and verify its SHA.

        Raises:
            ScriptHashMismatchError: If Redis reports a different SHA
        """
        sha = await client.script_load(self.body)
        if isinstance(sha, bytes):
            sha = sha.decode("ascii")
        self.load_count += 1
        if sha != self.sha:
            logger.error(
                f"Redis registered bucket script as {sha}, expected {self.sha}",
                extra=get_log_context(script_sha=self.sha),
            )
            raise ScriptHashMismatchError(self.sha, sha)
        logger.info(
            "Loaded bucket script into Redis",
            extra=get_log_context(script_sha=self.sha),
        )
        return sha

    async def evaluate(self, client: Any, keys: Sequence[str], args: Sequence[Any]) -> Any:
        """Run the script by SHA, loading it once if Redis does not know it.

        Args:
            client: redis.asyncio client (or a single-connection client)
            keys: KEYS for the script
            args: ARGV for the script

        Returns:
            The script's raw reply

        Raises:
            RoutineUnknownError: If the script is still unknown after reloading
            ScriptHashMismatchError: If the reload produced an unexpected SHA
        """
        try:
            result = await client.evalsha(self.sha, len(keys), *keys, *args)
        except NoScriptError:
            self.registered = False
            logger.info(
                "Bucket script not known to Redis, loading it",
                extra=get_log_context(script_sha=self.sha),
            )
            await self.register(client)
            try:
                result = await client.evalsha(self.sha, len(keys), *keys, *args)
            except NoScriptError as e:
                raise RoutineUnknownError(self.sha) from e
        self.registered = True
        return result
