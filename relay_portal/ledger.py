"""Virtual credit ledger used to buy daily quota increases."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from .errors import InsufficientFunds, NotFoundError, PermissionDenied, ValidationError
from .models import (
    ADMIN_BALANCE,
    ADMIN_DAILY_LIMIT,
    DEFAULT_BALANCE,
    DEFAULT_DAILY_LIMIT,
    PurchaseOption,
)
from .persistence import Persistence

DEFAULT_PURCHASE_OPTIONS = (
    PurchaseOption(name="basic", cost=20, limit=50),
    PurchaseOption(name="bulk", cost=100, limit=300),
)


def role_change_overrides(current_role: Optional[str], new_role: Optional[str]) -> Dict[str, int]:
    """Return the balance/limit overwrite triggered by a role change.

    Promotion installs the admin sentinels, demotion restores the new-account
    defaults. Values accumulated under the previous role are discarded.
    """
    if new_role is None or new_role == current_role:
        return {}
    if new_role == "admin":
        return {"balance": ADMIN_BALANCE, "daily_limit": ADMIN_DAILY_LIMIT}
    return {"balance": DEFAULT_BALANCE, "daily_limit": DEFAULT_DAILY_LIMIT}


class CreditLedger:
    """Debit and credit the per-account balance."""

    def __init__(self, persistence: Persistence, options: Optional[Iterable[PurchaseOption]] = None):
        self.persistence = persistence
        self.options: Dict[str, PurchaseOption] = {
            opt.name: opt for opt in (options if options is not None else DEFAULT_PURCHASE_OPTIONS)
        }

    def option(self, name: str) -> PurchaseOption:
        """Look up a configured purchase option by name."""
        try:
            return self.options[name]
        except KeyError:
            raise ValidationError(f"Unknown purchase option '{name}'") from None

    async def purchase(self, account: Dict[str, Any], cost: int, granted_limit: int) -> None:
        """Spend ``cost`` credits to raise the daily limit by ``granted_limit``.

        Only pairs present in the configured option table are accepted.
        """
        if account.get("role") == "admin":
            raise PermissionDenied("Admin accounts cannot purchase quota")
        if not any(opt.cost == cost and opt.limit == granted_limit for opt in self.options.values()):
            raise ValidationError(f"No purchase option costs {cost} for {granted_limit} messages")
        balance = int(account.get("balance") or 0)
        if balance < cost:
            raise InsufficientFunds(balance, cost)
        if not await self.persistence.spend_for_limit(account["id"], cost, granted_limit):
            # Someone else spent the credits between our read and the debit.
            current = await self.persistence.get_account(account["id"])
            if current is None:
                raise NotFoundError(f"Account '{account['id']}' not found")
            raise InsufficientFunds(int(current["balance"]), cost)

    async def adjust_balance(self, account: Dict[str, Any], amount: int, operation: str) -> None:
        """Add or subtract a positive ``amount``; the result never drops below zero."""
        if account.get("role") == "admin":
            raise ValidationError("Admin balances are not adjustable")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer")
        if operation not in ("add", "subtract"):
            raise ValidationError("operation must be 'add' or 'subtract'")
        delta = amount if operation == "add" else -amount
        if not await self.persistence.adjust_balance(account["id"], delta):
            raise NotFoundError(f"Account '{account['id']}' not found")
