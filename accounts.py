import logging
from typing import List, Optional

import bcrypt
from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, find_by_id, serialize, utcnow
from errors import DuplicateError, InvalidCredential, UnknownPrincipal, ValidationError
from identity import Identity
from policy import Action, authorize
from schemas import Account, Principal, ProfilePayload, RegisterPayload, Role

logger = logging.getLogger(__name__)

HIDDEN = ("password_hash",)

# Tokens minted by this service carry "local:<account id>" as their subject so
# they can never collide with an identity provider's subject ids.
LOCAL_PREFIX = "local:"

DUPLICATE_MESSAGES = {
    "email": "User already exists with this email",
    "external_subject_id": "Sign-in identity is already linked to another account",
}


def local_subject(account_id: str) -> str:
    return f"{LOCAL_PREFIX}{account_id}"


def is_local_subject(subject_id: str) -> bool:
    return subject_id.startswith(LOCAL_PREFIX)


def duplicate_message(exc: DuplicateKeyError) -> str:
    """Name the unique index a DuplicateKeyError came from."""
    key_pattern = (exc.details or {}).get("keyPattern") or {}
    for field, message in DUPLICATE_MESSAGES.items():
        if field in key_pattern:
            return message
    return DUPLICATE_MESSAGES["email"]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(password.encode(), hashed.encode())


def to_principal(account: dict) -> Principal:
    return Principal(
        id=str(account["_id"]),
        email=account["email"],
        name=account["name"],
        role=account.get("role", "user"),
        photo_url=account.get("photo_url"),
    )


def public(account: dict) -> dict:
    return serialize(account, hidden=HIDDEN)


class AccountManager:
    def __init__(self, db: Database, verifier):
        self.db = db
        self.verifier = verifier

    @property
    def accounts(self):
        return self.db["account"]

    def _insert(self, account: Account) -> dict:
        try:
            return create_document(self.db, "account", account)
        except DuplicateKeyError as e:
            raise DuplicateError(duplicate_message(e))

    def register(self, payload: RegisterPayload) -> dict:
        """Create a local (email + password) account.

        External accounts are only provisioned by ``sync_account`` from a
        verified provider token.
        """
        if self.accounts.find_one({"email": payload.email}):
            raise DuplicateError(DUPLICATE_MESSAGES["email"])
        account = Account(
            name=payload.name.strip(),
            email=payload.email,
            password_hash=hash_password(payload.password),
            photo_url=payload.photo_url,
            auth_provider="local",
            last_login_at=utcnow(),
        )
        doc = self._insert(account)
        logger.info(f"Registered local account {doc['_id']}")
        return {"token": self._token_for(doc), "user": public(doc)}

    def _token_for(self, account: dict) -> str:
        return self.verifier.issue(local_subject(str(account["_id"])), account["email"])

    def login(self, email: str, password: str) -> dict:
        account = self.accounts.find_one({"email": email.strip().lower()})
        if not account or account.get("auth_provider") != "local" \
                or not verify_password(password, account.get("password_hash")):
            raise InvalidCredential()
        now = utcnow()
        self.accounts.update_one({"_id": account["_id"]}, {"$set": {"last_login_at": now}})
        account["last_login_at"] = now
        return {"token": self._token_for(account), "user": public(account)}

    def _find_local(self, subject_id: str) -> Optional[dict]:
        account_id = subject_id[len(LOCAL_PREFIX):]
        if not ObjectId.is_valid(account_id):
            return None
        return self.accounts.find_one({"_id": ObjectId(account_id)})

    def load_principal(self, identity: Identity) -> Principal:
        if is_local_subject(identity.subject_id):
            account = self._find_local(identity.subject_id)
        else:
            account = self.accounts.find_one({"external_subject_id": identity.subject_id})
            if not account and identity.email:
                account = self.accounts.find_one({"email": identity.email.strip().lower()})
                linked = account.get("external_subject_id") if account else None
                if linked and linked != identity.subject_id:
                    logger.warning(f"Subject {identity.subject_id} presented email of account {account['_id']}")
                    account = None
        if not account:
            raise UnknownPrincipal()
        return to_principal(account)

    def sync_account(self, email: str, external_subject_id: str,
                     name: Optional[str] = None, photo_url: Optional[str] = None) -> dict:
        """Upsert on external sign-in: subject id match, then email match, else create.

        A local session token only refreshes the profile of its own account.
        """
        if is_local_subject(external_subject_id):
            account = self._find_local(external_subject_id)
            if not account:
                raise UnknownPrincipal()
            return self._touch(account, None, name, photo_url)
        if not external_subject_id or ObjectId.is_valid(external_subject_id):
            raise ValidationError("Invalid sign-in identity")
        email = email.strip().lower()
        for _ in range(2):
            account = self.accounts.find_one({"external_subject_id": external_subject_id})
            if not account:
                account = self.accounts.find_one({"email": email})
                if account and account.get("external_subject_id") \
                        and account["external_subject_id"] != external_subject_id:
                    raise DuplicateError("Email is linked to a different sign-in identity")
            if account:
                return self._touch(account, external_subject_id, name, photo_url)
            try:
                doc = create_document(self.db, "account", Account(
                    name=(name or email.split("@")[0]).strip(),
                    email=email,
                    photo_url=photo_url,
                    auth_provider="external",
                    external_subject_id=external_subject_id,
                    last_login_at=utcnow(),
                ))
            except DuplicateKeyError:
                # Lost a race with a concurrent sign-in; the next pass finds it.
                continue
            logger.info(f"Provisioned external account {doc['_id']}")
            return public(doc)
        raise DuplicateError(DUPLICATE_MESSAGES["email"])

    def _touch(self, account: dict, external_subject_id: Optional[str], name: Optional[str],
               photo_url: Optional[str]) -> dict:
        patch = {"last_login_at": utcnow()}
        if external_subject_id and not account.get("external_subject_id"):
            patch["external_subject_id"] = external_subject_id
        if name:
            patch["name"] = name.strip()
        if photo_url:
            patch["photo_url"] = photo_url
        try:
            self.accounts.update_one({"_id": account["_id"]}, {"$set": patch})
        except DuplicateKeyError as e:
            raise DuplicateError(duplicate_message(e))
        account.update(patch)
        return public(account)

    def get(self, principal: Principal, account_id: str) -> dict:
        authorize(principal, Action.ACCOUNT_READ, account_id)
        return public(find_by_id(self.db, "account", account_id, "User"))

    def list(self, principal: Principal) -> List[dict]:
        authorize(principal, Action.ACCOUNT_LIST)
        return [public(a) for a in self.accounts.find({}).sort("created_at", -1)]

    def update_profile(self, principal: Principal, account_id: str, payload: ProfilePayload) -> dict:
        authorize(principal, Action.ACCOUNT_UPDATE, account_id)
        account = find_by_id(self.db, "account", account_id, "User")
        patch = payload.model_dump(exclude_none=True)
        if "name" in patch:
            patch["name"] = patch["name"].strip()
        if patch:
            patch["updated_at"] = utcnow()
            self.accounts.update_one({"_id": account["_id"]}, {"$set": patch})
            account.update(patch)
        return public(account)

    def set_role(self, principal: Principal, account_id: str, role: Role) -> dict:
        authorize(principal, Action.ACCOUNT_SET_ROLE)
        account = find_by_id(self.db, "account", account_id, "User")
        self.accounts.update_one({"_id": account["_id"]}, {"$set": {"role": role, "updated_at": utcnow()}})
        account["role"] = role
        logger.info(f"Account {account_id} role set to {role} by {principal.id}")
        return public(account)

    def bootstrap_admin(self, email: str, password: str, name: str = "Admin User") -> dict:
        """Ensure an admin account exists for ``email``, promoting it if needed."""
        email = email.strip().lower()
        existing = self.accounts.find_one({"email": email})
        if existing:
            if existing.get("role") != "admin":
                self.accounts.update_one({"_id": existing["_id"]}, {"$set": {"role": "admin"}})
                existing["role"] = "admin"
                logger.info(f"Promoted {existing['_id']} to admin")
            return public(existing)
        doc = self._insert(Account(
            name=name,
            email=email,
            password_hash=hash_password(password),
            role="admin",
            auth_provider="local",
        ))
        logger.info(f"Created admin account {doc['_id']}")
        return public(doc)
