"""
MIKO Keeper

Off-chain keeper for the MIKO Token-2022 mint:
- Launch fee schedule (30% -> 15% -> 5%)
- Withheld fee harvesting and withdrawal
- Swap of harvested fees into the reward asset
- Pro-rata reward distribution to eligible holders
"""

__version__ = "0.1.0"
