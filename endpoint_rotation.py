"""
Endpoint rotation
Round-robin failover over a chain's RPC or WebSocket endpoint list
"""

import logging
from typing import Callable, List, Optional, Tuple, Type, TypeVar

from errors import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EndpointRotation:
    """
    Explicit failover state: {endpoints, current_index, failures}

    The active endpoint is endpoints[failures % len(endpoints)]. A success
    resets the consecutive failure streak; once every endpoint has failed in
    a row the rotation is exhausted and raises NetworkError.
    """

    def __init__(self, endpoints: List[str], name: str = "rpc"):
        if not endpoints:
            raise ValueError(f"No {name} endpoints configured")
        self.endpoints = list(endpoints)
        self.name = name
        self.failures = 0
        self.consecutive_failures = 0

    @property
    def current_index(self) -> int:
        return self.failures % len(self.endpoints)

    @property
    def current(self) -> str:
        return self.endpoints[self.current_index]

    @property
    def exhausted(self) -> bool:
        return self.consecutive_failures >= len(self.endpoints)

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def record_failure(self, error: Optional[BaseException] = None) -> str:
        """Mark the current endpoint failed and move to the next one"""
        failed = self.current
        self.failures += 1
        self.consecutive_failures += 1
        logger.warning(
            f"{self.name} endpoint {failed} failed ({error}); "
            f"switching to {self.current} "
            f"[{self.consecutive_failures}/{len(self.endpoints)}]"
        )
        return self.current

    def reset(self) -> None:
        self.consecutive_failures = 0

    def attempt(
        self,
        call: Callable[[str], T],
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    ) -> T:
        """Run call(endpoint), failing over until it succeeds or all endpoints fail"""
        self.reset()
        last_error: Optional[BaseException] = None
        while not self.exhausted:
            endpoint = self.current
            try:
                result = call(endpoint)
            except retry_on as e:
                last_error = e
                self.record_failure(e)
                continue
            self.record_success()
            return result

        raise NetworkError(
            f"All {len(self.endpoints)} {self.name} endpoints failed: {last_error}"
        ) from last_error
