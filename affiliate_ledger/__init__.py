"""
Affiliate Referral, Commission and Withdrawal Ledger

This package provides:
- Visit tracking and best-effort attribution of visits to conversions
- Referral (commission) records with a rate snapshotted at creation
- Adjudication: pending → approved / rejected, terminal
- Withdrawal settlement: requested → processing → completed / failed
- Affiliate totals recomputed from source records, never incremented
- A throttled daily sweep and a public leaderboard
"""

from .models import (
    AffiliateStatus,
    ConversionType,
    ReferralStatus,
    WithdrawalStatus,
    TimeFrame,
    Affiliate,
    Visit,
    Referral,
    Withdrawal,
)
from .service import AffiliateLedger

__all__ = [
    "AffiliateStatus",
    "ConversionType",
    "ReferralStatus",
    "WithdrawalStatus",
    "TimeFrame",
    "Affiliate",
    "Visit",
    "Referral",
    "Withdrawal",
    "AffiliateLedger",
]
