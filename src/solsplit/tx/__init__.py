"""
Transaction module.

Handles message compilation, fee preflight, signing, and submission.
"""

from solsplit.tx.fees import BalanceGuard, FeeEstimator, InsufficientFundsError
from solsplit.tx.signer import KeypairWallet, WalletSigner
from solsplit.tx.submitter import SubmissionFailure, TransactionSubmitter

__all__ = [
    "BalanceGuard",
    "FeeEstimator",
    "InsufficientFundsError",
    "KeypairWallet",
    "WalletSigner",
    "SubmissionFailure",
    "TransactionSubmitter",
]
