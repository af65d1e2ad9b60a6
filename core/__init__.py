"""core/ -- Kernel of corecount: inspection record model, errors, configuration.

Layer rule: core/ imports only stdlib + third-party libraries.
It does NOT import from ledger/ or main.py.
ledger/ imports from core/, not the other way around.
"""
