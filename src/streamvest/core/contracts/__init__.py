"""
Asset contracts consumed by the vesting converter.

- ERC20Token: in-memory fungible token with burnFrom and custody transfers
- InputAsset / OutputAsset: the surface the converter calls on its assets
"""

from .erc20 import ERC20Token, InputAsset, OutputAsset, TokenEvent

__all__ = [
    "ERC20Token",
    "InputAsset",
    "OutputAsset",
    "TokenEvent",
]
