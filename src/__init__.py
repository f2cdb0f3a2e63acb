"""
Orylis Quotes — quote lifecycle of the Orylis client space

Packages:
    api/           Flask routes (operator + signer endpoints)
    forms/         Quote PDF rendering and signature overlay
    agents/        Lifecycle e-mails
    integrations/  Stripe deposit checkout
    core/          Ledger, numbering, accounts, storage, DB, config, paths
"""
