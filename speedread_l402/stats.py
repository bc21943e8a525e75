"""
In-memory access gate stats.

Counts grants, challenges, pending polls, rejections (by reason) and
upstream errors per route, plus revenue counted once per paid payment hash.
Only the most recent paid hashes are remembered; a token re-used after its
hash has been forgotten is counted as revenue again.
Pending polls and upstream errors are kept apart: "not yet paid" is the
normal polling state, "could not check" is not.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

OUTCOMES = ("granted", "challenged", "pending", "rejected", "errors")


@dataclass
class GrantRecord:
    """A single paid grant."""
    route: str
    resource_id: str
    amount_sats: int
    payment_hash: Optional[str]
    timestamp: float  # milliseconds since epoch


class GateStats:
    """In-memory gate statistics tracker."""

    def __init__(self, max_recent: int = 100, max_paid_hashes: int = 10_000):
        self.max_recent = max_recent
        self.max_paid_hashes = max_paid_hashes

        # Totals
        self.total_revenue: int = 0
        self.total_requests: int = 0
        self.unique_payments: int = 0

        # Per-route: route → { granted, challenged, pending, rejected, errors }
        self._routes: Dict[str, Dict[str, int]] = {}

        # Rejections by ErrorKind value
        self._rejections: Dict[str, int] = {}

        # Most recently counted payment hashes, oldest first
        self._paid_hashes: "OrderedDict[str, None]" = OrderedDict()

        # Recent grants (ring buffer)
        self._recent_grants: List[GrantRecord] = []

    def record(
        self,
        route: str,
        outcome: str,
        resource_id: str = "",
        amount_sats: int = 0,
        payment_hash: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """
        Record one gate decision.

        Args:
            route: Route family (e.g. "content", "verify", "publish").
            outcome: One of OUTCOMES.
            resource_id: Resource the request was for.
            amount_sats: Price of the resource.
            payment_hash: Payment hash, for paid grants.
            reason: ErrorKind value, for rejections.
        """
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown outcome: {outcome}")

        self.total_requests += 1

        if route not in self._routes:
            self._routes[route] = {name: 0 for name in OUTCOMES}
        self._routes[route][outcome] += 1

        if outcome == "rejected" and reason:
            self._rejections[reason] = self._rejections.get(reason, 0) + 1

        if outcome == "granted" and payment_hash:
            # Re-access with the same token is not new revenue
            if payment_hash in self._paid_hashes:
                self._paid_hashes.move_to_end(payment_hash)
            elif amount_sats > 0:
                self._paid_hashes[payment_hash] = None
                self.unique_payments += 1
                self.total_revenue += amount_sats
                if len(self._paid_hashes) > self.max_paid_hashes:
                    self._paid_hashes.popitem(last=False)

            self._recent_grants.append(
                GrantRecord(
                    route=route,
                    resource_id=resource_id,
                    amount_sats=amount_sats,
                    payment_hash=payment_hash,
                    timestamp=time.time() * 1000,
                )
            )
            if len(self._recent_grants) > self.max_recent:
                self._recent_grants = self._recent_grants[-self.max_recent:]

    def to_dict(self) -> Dict[str, Any]:
        """Get stats summary as a plain dict."""
        recent = [
            {
                "route": r.route,
                "resourceId": r.resource_id,
                "amountSats": r.amount_sats,
                "paymentHash": r.payment_hash,
                "timestamp": r.timestamp,
            }
            for r in self._recent_grants[-20:]
        ]
        recent.reverse()

        return {
            "totalRevenue": self.total_revenue,
            "totalRequests": self.total_requests,
            "uniquePayments": self.unique_payments,
            "routes": {route: dict(data) for route, data in self._routes.items()},
            "rejections": dict(self._rejections),
            "recentGrants": recent,
        }
