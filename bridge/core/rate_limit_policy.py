"""Политики rate limit по процедурам.

Таблица повторяет лимиты RPC-слоя основного приложения; любую запись
можно переопределить через `RATE_LIMIT_POLICIES` (JSON).
"""

from __future__ import annotations

from dataclasses import dataclass

from bridge.core.config import Settings

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
READ_METHODS = frozenset({"GET", "HEAD"})

_MINUTE_MS = 60000


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    limit: int
    window_seconds: float


PROCEDURE_LIMITS: dict[str, tuple[int, int]] = {
    # Organizations
    "org.createOrg": (10, _MINUTE_MS),
    "org.listOrgs": (60, _MINUTE_MS),
    "org.setCurrent": (120, _MINUTE_MS),
    "org.updateMemberRole": (30, _MINUTE_MS),
    "org.removeMember": (30, _MINUTE_MS),
    "org.invite": (20, _MINUTE_MS),
    "org.acceptInvite": (10, _MINUTE_MS),
    # Records
    "records.createRecord": (60, _MINUTE_MS),
    "records.updateRecord": (60, _MINUTE_MS),
    "records.deleteRecord": (30, _MINUTE_MS),
    "records.listRecords": (120, _MINUTE_MS),
    # Scheduling
    "scheduling.createReminder": (60, _MINUTE_MS),
    "scheduling.completeReminder": (120, _MINUTE_MS),
    "scheduling.snoozeReminder": (60, _MINUTE_MS),
    "scheduling.listReminders": (120, _MINUTE_MS),
    # Billing (sensitive)
    "billing.createCheckout": (10, _MINUTE_MS),
    "billing.openPortal": (10, _MINUTE_MS),
    "billing.getSubscription": (30, _MINUTE_MS),
    # Audit
    "audit.list": (60, _MINUTE_MS),
    "audit.append": (120, _MINUTE_MS),
    # Automation bridge
    "automation.enqueue": (60, _MINUTE_MS),
    "automation.runDeliveryTick": (10, _MINUTE_MS),
    "automation.listPending": (120, _MINUTE_MS),
    "automation.listFailed": (120, _MINUTE_MS),
    "automation.getStats": (120, _MINUTE_MS),
    "automation.sweep": (10, _MINUTE_MS),
}


class PolicyTable:
    """Поиск политики для процедуры.

    Parameters
    ----------
    settings : Settings
        Настройки: лимиты по умолчанию и JSON переопределений.
    """

    def __init__(self, settings: Settings) -> None:
        self.default = RateLimitPolicy(
            settings.rate_limit_default_limit,
            settings.rate_limit_window_seconds,
        )
        self.write_default = RateLimitPolicy(
            settings.rate_limit_write_limit,
            settings.rate_limit_window_seconds,
        )
        self.read_default = RateLimitPolicy(
            settings.rate_limit_read_limit,
            settings.rate_limit_window_seconds,
        )
        self.policies: dict[str, RateLimitPolicy] = {
            name: RateLimitPolicy(limit, window_ms / 1000.0)
            for name, (limit, window_ms) in PROCEDURE_LIMITS.items()
        }
        for name, item in settings.rate_limit_policy_overrides.items():
            window_ms = int(item.get("window_ms", settings.rate_limit_window_ms))
            self.policies[name] = RateLimitPolicy(int(item["limit"]), window_ms / 1000.0)

    def resolve(self, procedure: str, method: str) -> RateLimitPolicy:
        """Политика для процедуры; для неизвестных по HTTP методу."""

        policy = self.policies.get(procedure)
        if policy is not None:
            return policy
        method = method.upper()
        if method in WRITE_METHODS:
            return self.write_default
        if method in READ_METHODS:
            return self.read_default
        return self.default


def bucket_key(client_ip: str, tenant_id: str, procedure: str) -> str:
    """Ключ bucket'а: ip + организация + процедура."""

    return f"ratelimit:{client_ip}:{tenant_id}:{procedure}"
