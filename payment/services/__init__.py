from .earnings import EarningsDistributor, vendor_share, wallet_summary
from .gateway import BasePaymentGateway, HttpPaymentGateway, get_payment_gateway
from .ledger import AlreadyProcessed, Ledger
from .withdrawals import InsufficientFunds, InvalidAction, InvalidAmount, WithdrawalWorkflow

__all__ = [
    "AlreadyProcessed",
    "BasePaymentGateway",
    "EarningsDistributor",
    "HttpPaymentGateway",
    "InsufficientFunds",
    "InvalidAction",
    "InvalidAmount",
    "Ledger",
    "WithdrawalWorkflow",
    "get_payment_gateway",
    "vendor_share",
    "wallet_summary",
]
