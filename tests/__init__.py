"""
Settlement core test suite.

Covers:
- pricing and billing-date rules
- processor adapters (Stripe SDK, Pyre and PayNetWorx over HTTP)
- processor selection
- the recurring billing engine, ledger and account store
- the operational API and scheduler
"""
