"""
RentPay Tenant Client

Tenant-side rent payment flow: rental lookup, payment submission, and
reconciliation of payment status across the local cache, the push channel,
and backend polling.

Usage:
    from rentpay.reconciler import ReconciliationEngine
    from rentpay.submission import PaymentDraft, PaymentSubmitter

    engine = ReconciliationEngine(api, cache, push_url=PUSH_URL)
    await engine.mount(session)
    record = await PaymentSubmitter(api, engine).submit(
        PaymentDraft(method="cash", amount="5000", month="2025-11")
    )
"""

__version__ = "1.0.0"
