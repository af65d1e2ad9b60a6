"""ledger/ -- Import pipeline and persistence for the corecount ledger.

Layer rule: ledger/ imports from core/ and third-party libraries only.
It does NOT import from main.py. Only main.py reads settings; everything here
receives its store, folders and reference data as arguments.
"""
