from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Mapping

from pnl_statements.db.models import ClientAction, ClientStatus, ExceptionType
from pnl_statements.db.records import Client, DisplayNameChange, normalize_year, utcnow
from pnl_statements.db.store import Store
from pnl_statements.utils.logging import get_logger, kv

logger = get_logger(__name__)


@dataclass(frozen=True)
class IdentityConflict:
    account_id: str
    existing_username: str | None
    incoming_username: str | None

    @property
    def exception_type(self) -> ExceptionType:
        return ExceptionType.IDENTITY_CONFLICT_USERNAME_MISMATCH

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.exception_type.value,
            "account_id": self.account_id,
            "existing_username": self.existing_username,
            "incoming_username": self.incoming_username,
        }


@dataclass(frozen=True)
class IdentityResolution:
    """Planned client state for one submission.

    Nothing is written here; the orchestrator stores ``client`` together with
    the report version. On a conflict ``client`` is the stored record, unchanged.
    """

    client: Client
    action: ClientAction
    conflict: IdentityConflict | None = None

    @property
    def has_conflict(self) -> bool:
        return self.conflict is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "identity_resolution": "REVIEW_REQUIRED" if self.conflict else "AUTO",
            "overlap_prevented": True,
            "conflict": self.conflict.to_dict() if self.conflict else None,
        }


def _fold(value: Any) -> str | None:
    return str(value).casefold() if value is not None else None


def resolve_client(
    store: Store, header: Mapping[str, Any], now: datetime | None = None
) -> IdentityResolution:
    stamp = now or utcnow()
    account_id = str(header.get("account_id"))
    username = header.get("username")
    display_name = header.get("client_display_name")

    existing = store.get_client(account_id)
    if existing is None:
        client = Client(
            account_id=account_id,
            username=username,
            display_name=display_name,
            created_at=stamp,
            updated_at=stamp,
            status=ClientStatus.ACTIVE,
            linked_usernames=(username,) if username else (),
        )
        return IdentityResolution(client=client, action=ClientAction.CREATE)

    if _fold(existing.username) != _fold(username):
        conflict = IdentityConflict(
            account_id=account_id,
            existing_username=existing.username,
            incoming_username=username,
        )
        logger.warning(
            "username conflict %s",
            kv(account_id=account_id, existing=existing.username, incoming=username),
        )
        return IdentityResolution(
            client=existing, action=ClientAction.MANUAL_REVIEW_REQUIRED, conflict=conflict
        )

    history = existing.display_name_history
    current_name = existing.display_name
    if display_name and display_name != existing.display_name:
        history = history + (
            DisplayNameChange(previous=existing.display_name, new_value=display_name, changed_at=stamp),
        )
        current_name = display_name

    linked = existing.linked_usernames
    if username and username not in linked:
        linked = linked + (username,)

    client = replace(
        existing,
        display_name=current_name,
        display_name_history=history,
        linked_usernames=linked,
        updated_at=stamp,
    )
    action = ClientAction.CREATE if existing.report_count == 0 else ClientAction.UPDATE
    return IdentityResolution(client=client, action=action)


def _year_sort_key(year: int | str) -> tuple[int, Any]:
    return (0, year) if isinstance(year, int) else (1, str(year))


def apply_client_stats(client: Client, year: Any, now: datetime | None = None) -> Client:
    """Count one more stored report and record its year."""
    normalized = normalize_year(year)
    years = set(client.years_on_file)
    years.add(normalized)
    return replace(
        client,
        report_count=client.report_count + 1,
        years_on_file=tuple(sorted(years, key=_year_sort_key)),
        updated_at=now or client.updated_at,
    )


def update_client_stats(store: Store, account_id: str, year: Any) -> Client | None:
    client = store.get_client(account_id)
    if client is None:
        return None
    updated = apply_client_stats(client, year, now=utcnow())
    store.put_client(updated)
    return updated
