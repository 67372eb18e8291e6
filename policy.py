"""
Authorization policy.

``decide`` is a pure function of (principal, action, resource owner, resource
state). Rules are evaluated in order:

1. admins may do anything;
2. owners may act on their own resources (own-scoped actions);
3. librarians may manage books they created and orders for those books;
4. everything else is denied.

``authorize`` raises the matching error for a denial.
"""
import logging
from enum import Enum
from typing import NamedTuple, Optional

from errors import InsufficientRole, InvalidState, NotOwner
from schemas import Principal

logger = logging.getLogger(__name__)

NOT_OWNER = "NotOwner"
INSUFFICIENT_ROLE = "InsufficientRole"
INVALID_STATE = "InvalidState"


class Action(str, Enum):
    ACCOUNT_READ = "account:read"
    ACCOUNT_UPDATE = "account:update"
    ACCOUNT_LIST = "account:list"
    ACCOUNT_SET_ROLE = "account:set-role"

    BOOK_CREATE = "book:create"
    BOOK_UPDATE = "book:update"
    BOOK_SET_STATUS = "book:set-status"
    BOOK_DELETE = "book:delete"
    BOOK_READ_UNPUBLISHED = "book:read-unpublished"

    ORDER_READ = "order:read"
    ORDER_LIST_BY_USER = "order:list-by-user"
    ORDER_LIST_BY_LIBRARIAN = "order:list-by-librarian"
    ORDER_TRANSITION = "order:transition"
    ORDER_CANCEL = "order:cancel"

    REVIEW_UPDATE = "review:update"
    REVIEW_DELETE = "review:delete"

    WISHLIST_READ = "wishlist:read"
    WISHLIST_REMOVE = "wishlist:remove"

    PAYMENT_READ = "payment:read"
    PAYMENT_PAY = "payment:pay"


class Decision(NamedTuple):
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self):
        return self.allowed


ALLOW = Decision(True)


def deny(reason: str) -> Decision:
    return Decision(False, reason)


# Actions a principal may perform on resources whose owner id equals theirs.
OWN_ACTIONS = {
    Action.ACCOUNT_READ,
    Action.ACCOUNT_UPDATE,
    Action.ORDER_READ,
    Action.ORDER_LIST_BY_USER,
    Action.REVIEW_UPDATE,
    Action.REVIEW_DELETE,
    Action.WISHLIST_READ,
    Action.WISHLIST_REMOVE,
    Action.PAYMENT_READ,
    Action.PAYMENT_PAY,
}

# Librarian actions scoped to books the librarian owns. The owner checked is
# resource_state["book_owner_id"] for order actions and resource_owner_id for
# book actions.
LIBRARIAN_BOOK_ACTIONS = {Action.BOOK_UPDATE, Action.BOOK_SET_STATUS, Action.BOOK_READ_UNPUBLISHED}
LIBRARIAN_ORDER_ACTIONS = {Action.ORDER_READ, Action.ORDER_TRANSITION, Action.ORDER_CANCEL}

CANCELLABLE_BY_OWNER = {"pending"}
CANCELLABLE_BY_STAFF = {"pending", "confirmed"}


def decide(principal: Principal, action: Action, resource_owner_id: Optional[str] = None,
           resource_state: Optional[dict] = None) -> Decision:
    state = resource_state or {}

    if principal.role == "admin":
        return ALLOW

    is_owner = resource_owner_id is not None and principal.id == resource_owner_id

    if action == Action.ORDER_CANCEL and is_owner:
        if state.get("status") in CANCELLABLE_BY_OWNER:
            return ALLOW
    elif is_owner and action in OWN_ACTIONS:
        return ALLOW

    if principal.role == "librarian":
        if action == Action.BOOK_CREATE:
            return ALLOW
        if action in LIBRARIAN_BOOK_ACTIONS:
            return ALLOW if is_owner else deny(NOT_OWNER)
        if action == Action.ORDER_LIST_BY_LIBRARIAN:
            return ALLOW if is_owner else deny(NOT_OWNER)
        if action in LIBRARIAN_ORDER_ACTIONS:
            if state.get("book_owner_id") != principal.id:
                return deny(INVALID_STATE) if is_owner else deny(NOT_OWNER)
            if action == Action.ORDER_CANCEL and state.get("status") not in CANCELLABLE_BY_STAFF:
                return deny(INVALID_STATE)
            return ALLOW

    if action == Action.ORDER_CANCEL and is_owner:
        return deny(INVALID_STATE)
    if action in OWN_ACTIONS:
        return deny(NOT_OWNER)
    return deny(INSUFFICIENT_ROLE)


_ERRORS = {
    NOT_OWNER: NotOwner,
    INSUFFICIENT_ROLE: InsufficientRole,
    INVALID_STATE: InvalidState,
}

_MESSAGES = {
    NOT_OWNER: "You can only manage your own resources",
    INSUFFICIENT_ROLE: "Your role does not allow this action",
    INVALID_STATE: "This action is not allowed in the resource's current state",
}


def authorize(principal: Principal, action: Action, resource_owner_id: Optional[str] = None,
              resource_state: Optional[dict] = None, message: Optional[str] = None) -> None:
    decision = decide(principal, action, resource_owner_id, resource_state)
    if decision:
        return
    logger.warning(f"Denied {action.value} for {principal.role} {principal.id}: {decision.reason}")
    raise _ERRORS[decision.reason](message or _MESSAGES[decision.reason])
