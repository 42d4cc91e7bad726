"""
Telemetry categories collected per tenant cycle.

Each category maps to one ESI GET endpoint and a transformer that turns the
raw JSON into the payload stored in ``snapshot.data[category]``. Categories
marked ``requires_auth`` are only fetched when a bearer token is available.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

# Members whose last logoff is within this window count as active
ACTIVE_MEMBER_WINDOW = timedelta(days=7)

Transformer = Callable[[Any, datetime], Any]


@dataclass(frozen=True)
class TelemetryCategory:
    name: str
    path: str
    requires_auth: bool = False
    transform: Optional[Transformer] = None

    def build_path(self, tenant_id: str) -> str:
        return self.path.format(tenant_id=tenant_id)

    def apply(self, data: Any, collected_at: datetime) -> Any:
        return self.transform(data, collected_at) if self.transform else data


def _parse_esi_datetime(value: Optional[str]) -> Optional[datetime]:
    """ESI timestamps are ISO-8601 UTC ('2025-01-05T11:00:00Z'); returned naive."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed


def _corporation_info(data: Dict[str, Any], collected_at: datetime) -> Dict[str, Any]:
    return {
        "name": data.get("name"),
        "ticker": data.get("ticker"),
        "member_count": data.get("member_count", 0),
        "ceo_id": data.get("ceo_id"),
        "tax_rate": data.get("tax_rate", 0),
        "alliance_id": data.get("alliance_id"),
        "founded": data.get("date_founded"),
    }


def _members(data: list, collected_at: datetime) -> Dict[str, Any]:
    return {"total": len(data), "character_ids": list(data)}


def _member_tracking(data: list, collected_at: datetime) -> Dict[str, Any]:
    cutoff = collected_at - ACTIVE_MEMBER_WINDOW
    active = 0
    member_list = []
    for member in data:
        logoff = _parse_esi_datetime(member.get("logoff_date"))
        if logoff is not None and logoff > cutoff:
            active += 1
        member_list.append({
            "character_id": member.get("character_id"),
            "join_date": member.get("start_date"),
            "last_login": member.get("logon_date"),
            "last_logoff": member.get("logoff_date"),
        })
    return {"total": len(data), "active": active, "member_list": member_list}


def _wallets(data: list, collected_at: datetime) -> Dict[str, Any]:
    return {
        "balance": round(sum(d.get("balance", 0) for d in data), 2),
        "divisions": data,
    }


def _structures(data: list, collected_at: datetime) -> Dict[str, Any]:
    return {"total": len(data), "structure_list": data}


def _industry_jobs(data: list, collected_at: datetime) -> Dict[str, Any]:
    return {
        "total": len(data),
        "active": sum(1 for job in data if job.get("status") == "active"),
    }


def _market_orders(data: list, collected_at: datetime) -> Dict[str, Any]:
    return {
        "total": len(data),
        "total_value": round(sum(o.get("price", 0) * o.get("volume_remain", 0) for o in data), 2),
    }


CATEGORY_REGISTRY: Dict[str, TelemetryCategory] = {
    c.name: c
    for c in (
        TelemetryCategory("corporation_info", "/corporations/{tenant_id}/", transform=_corporation_info),
        TelemetryCategory("alliance_history", "/corporations/{tenant_id}/alliancehistory/"),
        TelemetryCategory("members", "/corporations/{tenant_id}/members/", True, _members),
        TelemetryCategory("member_tracking", "/corporations/{tenant_id}/membertracking/", True, _member_tracking),
        TelemetryCategory("wallets", "/corporations/{tenant_id}/wallets/", True, _wallets),
        TelemetryCategory("structures", "/corporations/{tenant_id}/structures/", True, _structures),
        TelemetryCategory("industry_jobs", "/corporations/{tenant_id}/industry/jobs/", True, _industry_jobs),
        TelemetryCategory("market_orders", "/corporations/{tenant_id}/orders/", True, _market_orders),
    )
}
