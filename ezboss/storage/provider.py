from contextlib import contextmanager
from typing import Iterator, List, Optional

from ..schemas.estimates import Estimate


class EstimateStore:
    """Document store for estimate aggregates."""

    def create(self, estimate: Estimate) -> Estimate:
        raise NotImplementedError

    def find(self, estimate_id: str) -> Optional[Estimate]:
        raise NotImplementedError

    def get(self, estimate_id: str) -> Estimate:
        raise NotImplementedError

    def get_by_token(self, token: str) -> Estimate:
        raise NotImplementedError

    def save(self, estimate: Estimate) -> Estimate:
        raise NotImplementedError

    def delete(self, estimate_id: str) -> None:
        raise NotImplementedError

    def query(
        self,
        estimate_state: Optional[str] = None,
        client_state: Optional[str] = None,
        project_id: Optional[str] = None,
        parent_estimate_id: Optional[str] = None,
        customer_prefix: Optional[str] = None,
        order_by: str = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Estimate]:
        raise NotImplementedError

    def last_number_with_prefix(self, prefix: str) -> Optional[str]:
        raise NotImplementedError

    @contextmanager
    def transaction(self, estimate_id: str) -> Iterator[Estimate]:
        """
        Load, hand the aggregate to the caller to mutate, then write it back
        conditionally on the version that was loaded. If the block raises,
        nothing is written.
        """
        estimate = self.get(estimate_id)
        yield estimate
        self.save(estimate)

    @contextmanager
    def token_transaction(self, token: str) -> Iterator[Estimate]:
        estimate = self.get_by_token(token)
        yield estimate
        self.save(estimate)
