"""
Account Ownership Module

Authorization predicate deciding who may act on an account. The caller
identity arrives already authenticated from the outer gateway; this module
only compares it against the account owner.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable

from .accounts import Account, AccountStore
from .errors import AccountNotFoundError, ForbiddenError


ADMIN_ROLE = "ADMIN"


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller supplied by the gatekeeper"""
    user_id: str
    roles: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, user_id: str, roles: Iterable[str] = ()) -> 'CallerIdentity':
        return cls(user_id=user_id, roles=frozenset(role.upper() for role in roles))

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


class AccountOwnershipGuard:
    """Restricts account operations to the owner; admins bypass the check"""

    def __init__(self, account_store: AccountStore):
        self.account_store = account_store

    @staticmethod
    def may_access(caller: CallerIdentity, account: Account) -> bool:
        """Pure ownership predicate"""
        return caller.is_admin or account.owner_id == caller.user_id

    def authorize(self, caller: CallerIdentity, account_id: str) -> Account:
        """
        Check the caller may act on the account

        Returns:
            The account that was checked

        Raises:
            AccountNotFoundError: If the account does not exist
            ForbiddenError: If the caller neither owns the account nor is an admin
        """
        account = self.account_store.get_by_id(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found", account_id=account_id)

        if not self.may_access(caller, account):
            raise ForbiddenError(
                "You don't have access to this account",
                account_id=account_id, user_id=caller.user_id
            )
        return account
