"""
Settlements app: turns completed appointments into money.

This app handles:
- Two-party appointment confirmation and dispute resolution
- The earnings ledger (one earning per confirmed appointment)
- Weekly payout cycles with a cutoff and grace period
- Platform fee collection with retry, backoff and account blocking
- Net payouts to professionals once fees are settled
- The periodic pass that drives all of the above

Related apps:
    - core: Base models, services and exceptions

Usage:
    from settlements.services import ScheduledOrchestrator

    report = ScheduledOrchestrator.run_once()
"""
