"""
Solana adapters: ledger accessor, Token-2022 parsing and pool detection.
"""
