"""
solarledger
===========
Solar P2P Ledger — peer-to-peer solar energy trading on a contract ledger.

Subpackages:
    core:        contract, host ledger, errors, configuration, entry point.
    interfaces:  REST API, event indexer, Prometheus metrics.
"""

__version__ = "0.1.0"
