from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from ..errors import MissingToken


@dataclass(frozen=True)
class TokenStore:
    """
    Hidden state tokens (view-state, event-validation, per-request GUID fields, ...) that the site
    expects to be echoed back verbatim on the next request.

    The store is a value: `merge()` returns a new store, so the session driver threads the current
    store from one response to the next request explicitly.
    """

    _tokens: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def merge(self, tokens: Mapping[str, str]) -> "TokenStore":
        if not tokens:
            return self
        merged = dict(self._tokens)
        for name, value in tokens.items():
            merged[name] = value if value is not None else ""
        return TokenStore(MappingProxyType(merged))

    def snapshot_for_request(self, names: Optional[Iterable[str]] = None) -> dict[str, str]:
        # Some pages reject empty hidden fields, so empty values are never sent.
        wanted = set(names) if names is not None else None
        return {
            name: value
            for name, value in self._tokens.items()
            if value and (wanted is None or name in wanted)
        }

    def require(self, *names: str, step: str = "") -> None:
        snapshot = self.snapshot_for_request()
        missing = tuple(n for n in names if n not in snapshot)
        if missing:
            raise MissingToken(missing, step=step)

    def __contains__(self, name: object) -> bool:
        return bool(self._tokens.get(name)) if isinstance(name, str) else False

    def __len__(self) -> int:
        return len(self.snapshot_for_request())
