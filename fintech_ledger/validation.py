"""
Transfer Validation Module

Pure, side-effect-free transfer rules. The engine runs them once at entry
against a first read and again inside the critical section against fresh
account rows; the second run is authoritative.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .accounts import Account
from .currency import Currency, AmountLike, to_decimal, has_valid_precision, format_amount
from .errors import (
    InvalidAmountError, SameAccountTransferError,
    AccountNotFoundError, InsufficientFundsError
)


@dataclass(frozen=True)
class TransferCheck:
    """Inputs of one validation pass"""
    amount: Decimal
    source: Optional[Account]
    destination: Optional[Account]
    source_account_id: str
    destination_account_number: str


class TransferValidator:
    """
    Transfer business rules, in order, first failure wins:

    1. amount is positive and precision-valid for the source currency
    2. source and destination are different accounts
    3. both accounts exist
    4. source balance covers the amount
    """

    def __init__(self, default_currency: Currency = Currency.USD):
        self.default_currency = default_currency

    def check_amount(self, amount: AmountLike) -> Decimal:
        """
        Currency-independent checks run before any account is read: the
        amount parses as a fixed-point value and is positive

        Raises:
            InvalidAmountError
        """
        try:
            value = to_decimal(amount)
        except ValueError as e:
            raise InvalidAmountError(str(e), amount=amount) from e

        if value <= Decimal('0'):
            raise InvalidAmountError("Transfer amount must be positive", amount=value)
        return value

    def parse_amount(self, amount: AmountLike, currency: Optional[Currency] = None) -> Decimal:
        """
        Convert and check a requested amount against a currency's precision

        Raises:
            InvalidAmountError: If the amount is a float, non-numeric, not positive
                or has more fractional digits than the currency allows
        """
        currency = currency or self.default_currency
        value = self.check_amount(amount)
        if not has_valid_precision(value, currency):
            raise InvalidAmountError(
                f"Transfer amount {value} has more than {currency.precision} fractional digits for {currency.code}",
                amount=value, currency=currency.code
            )
        return value

    def validate(self, check: TransferCheck) -> None:
        """
        Run every rule against one consistent read of both accounts

        Raises:
            InvalidAmountError, SameAccountTransferError,
            AccountNotFoundError, InsufficientFundsError
        """
        currency = check.source.currency if check.source else None
        self.parse_amount(check.amount, currency)

        if (check.source is not None and check.destination is not None
                and check.source.id == check.destination.id):
            raise SameAccountTransferError(
                "Cannot transfer money to the same account", account_id=check.source.id
            )

        if check.source is None:
            raise AccountNotFoundError(
                "Source account not found", account_id=check.source_account_id
            )
        if check.destination is None:
            raise AccountNotFoundError(
                f"Destination account not found with number: {check.destination_account_number}",
                account_number=check.destination_account_number
            )

        if check.source.currency != check.destination.currency:
            raise InvalidAmountError(
                f"Cannot transfer between accounts with different currencies: "
                f"{check.source.currency.code} -> {check.destination.currency.code}"
            )

        if not check.source.can_cover(check.amount):
            raise InsufficientFundsError(
                f"Insufficient balance: available {format_amount(check.source.balance, check.source.currency)}, "
                f"requested {format_amount(check.amount, check.source.currency)}",
                account_id=check.source.id
            )
