"""
escrow_release -- Escrow milestone release engine.

Moves escrowed creator Earnings to completed when a release condition is
met: deal completed plus grace period, milestone auto-release date reached,
marketer-scheduled date reached, or maximum escrow age exceeded.  Runs on
cron triggers or on demand, completes fully drained deals and notifies the
parties.  Operators may also release a deal's escrow directly.

Architecture:
    escrow_release/ is a top-level package built on escrow_kernel (models,
    db, logging, retry) and escrow_config (rules and engine settings).
    Nothing in escrow_kernel or escrow_config imports from it at module
    load time.

Invariants:
    - An Earning leaves escrow at most once (conditional claim UPDATE).
    - Eligibility classes run in a fixed order; the first claim wins.
    - Approval-gated Earnings are never claimed without a recorded approval.
    - One failing item never stops the rest of the run.
    - Clock injection: every decision in a run uses the run's ``now``.
    - Notifications never block or roll back a release.
"""
