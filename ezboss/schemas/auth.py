from typing import List, Optional

from pydantic import BaseModel


class Actor(BaseModel):
    """The authenticated contractor user performing a mutation."""

    id: str
    name: str
    email: Optional[str] = None
    roles: List[str] = []
    permissions: List[str] = []

    @property
    def is_admin(self) -> bool:
        return any(r.lower() == "admin" for r in self.roles)


CLIENT_ACTOR = Actor(id="client", name="Client")
