# /services/identity.py
# Who is making a request. The sign-in layer in front of the API forwards the user's email;
# anonymous visitors keep a client-generated id so their chat history survives reloads.
import uuid
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Identity:
    email: str | None = None
    anonymous_id: str | None = None
    _generated: str = field(default_factory=lambda: uuid.uuid4().hex, repr=False, compare=False)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.email)

    @property
    def user_id(self) -> str:
        if self.email:
            return self.email
        if self.anonymous_id:
            anon = self.anonymous_id
            return anon if anon.startswith("anonymous_") else f"anonymous_{anon}"
        return f"anonymous_{self._generated}"
