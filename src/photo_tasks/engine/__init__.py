"""Task retry and recovery engine.

Foreground submissions get a short bounded retry window through the request
gateway. Work that outlives it is parked for the background scheduler, which
re-drives it with a longer budget. The stuck task reaper reclaims attempts
whose worker vanished, and the billing ledger guarantees one debit per task.
"""
