import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pymongo.database import Database
from slowapi import Limiter
from slowapi.util import get_remote_address

from accounts import AccountManager
from books import BookManager
from config import Settings, get_settings
from database import connect, ensure_indexes
from errors import Unavailable, register_error_handlers
from identity import SignedTokenVerifier, bearer_token, resolve_identity
from media import ImgBBHost
from orders import OrderManager
from payments import PaymentLedger, StripeGateway
from ratings import RatingEngine
from reviews import ReviewManager
from schemas import (BookPayload, BookSort, BookStatus, BookStatusPayload, BookUpdatePayload,
                     ConfirmPayload, IntentPayload, LoginPayload, OrderPayload, OrderStatusPayload,
                     Principal, ProfilePayload, RegisterPayload, ReviewPayload, ReviewUpdatePayload,
                     RolePayload, SyncPayload, WishlistPayload)
from wishlist import WishlistManager

logger = logging.getLogger(__name__)

# Counted per client address.
limiter = Limiter(key_func=get_remote_address)
AUTH_LIMIT = "10 per 15 minutes"
BOOK_LIMIT = "20 per hour"
ORDER_LIMIT = "10 per hour"


class Services:
    """Managers wired to one database handle and one set of collaborators."""

    def __init__(self, db: Database, verifier, gateway, image_host, currency: str = "usd"):
        self.db = db
        self.verifier = verifier
        self.ratings = RatingEngine(db)
        self.accounts = AccountManager(db, verifier)
        self.books = BookManager(db, image_host)
        self.orders = OrderManager(db)
        self.reviews = ReviewManager(db, self.ratings)
        self.wishlist = WishlistManager(db)
        self.payments = PaymentLedger(db, gateway, currency)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format='%(asctime)s - %(levelname)s - %(message)s')


# ----- Dependencies -----

def get_services(request: Request) -> Services:
    services = request.app.state.services
    if services is None:
        raise Unavailable("Database not configured")
    return services


def get_principal(authorization: Optional[str] = Header(default=None),
                  services: Services = Depends(get_services)) -> Principal:
    identity = resolve_identity(authorization, services.verifier)
    return services.accounts.load_principal(identity)


def get_optional_principal(authorization: Optional[str] = Header(default=None),
                           services: Services = Depends(get_services)) -> Optional[Principal]:
    if not authorization:
        return None
    return get_principal(authorization, services)


# ----- Health -----

health = APIRouter()


@health.get("/")
def root():
    return {"name": "BookNest API", "status": "ok"}


@health.get("/test")
def test_database(request: Request):
    response = {"backend": "✅ Running", "database": "❌ Not Available"}
    db = request.app.state.db
    if db is None:
        response["database"] = "❌ Not Configured"
        return response
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


api = APIRouter(prefix="/api")


# ----- Auth -----

@api.post("/auth/register", status_code=201)
@limiter.limit(AUTH_LIMIT)
def register(request: Request, payload: RegisterPayload, services: Services = Depends(get_services)):
    return services.accounts.register(payload)


@api.post("/auth/login")
@limiter.limit(AUTH_LIMIT)
def login(request: Request, payload: LoginPayload, services: Services = Depends(get_services)):
    return services.accounts.login(payload.email, payload.password)


@api.post("/auth/sync")
@limiter.limit(AUTH_LIMIT)
def sync(request: Request, payload: SyncPayload, authorization: Optional[str] = Header(default=None),
         services: Services = Depends(get_services)):
    identity = services.verifier.verify(bearer_token(authorization))
    user = services.accounts.sync_account(identity.email, identity.subject_id,
                                          payload.name, payload.photo_url)
    return {"user": user}


@api.get("/auth/me")
def me(current: Principal = Depends(get_principal), services: Services = Depends(get_services)):
    return {"user": services.accounts.get(current, current.id)}


@api.post("/auth/logout")
def logout(current: Principal = Depends(get_principal)):
    # Tokens are stateless; the client discards its copy.
    return {"logged_out": True}


# ----- Users -----

@api.get("/users")
def list_users(current: Principal = Depends(get_principal), services: Services = Depends(get_services)):
    return {"items": services.accounts.list(current)}


@api.get("/users/{user_id}")
def get_user(user_id: str, current: Principal = Depends(get_principal),
             services: Services = Depends(get_services)):
    return services.accounts.get(current, user_id)


@api.patch("/users/{user_id}")
def update_user(user_id: str, payload: ProfilePayload, current: Principal = Depends(get_principal),
                services: Services = Depends(get_services)):
    return services.accounts.update_profile(current, user_id, payload)


@api.patch("/users/{user_id}/role")
def set_user_role(user_id: str, payload: RolePayload, current: Principal = Depends(get_principal),
                  services: Services = Depends(get_services)):
    return services.accounts.set_role(current, user_id, payload.role)


# ----- Books -----

@api.get("/books")
def list_books(search: Optional[str] = None, category: Optional[str] = None,
               sort: Optional[BookSort] = None, status: Optional[BookStatus] = None,
               current: Optional[Principal] = Depends(get_optional_principal),
               services: Services = Depends(get_services)):
    return {"items": services.books.list(current, search, category, sort, status)}


@api.get("/books/librarian/{librarian_id}")
def list_librarian_books(librarian_id: str, current: Optional[Principal] = Depends(get_optional_principal),
                         services: Services = Depends(get_services)):
    return {"items": services.books.list_by_librarian(current, librarian_id)}


@api.get("/books/{book_id}")
def get_book(book_id: str, current: Optional[Principal] = Depends(get_optional_principal),
             services: Services = Depends(get_services)):
    return services.books.get(current, book_id)


@api.post("/books", status_code=201)
@limiter.limit(BOOK_LIMIT)
def create_book(request: Request, payload: BookPayload, current: Principal = Depends(get_principal),
                services: Services = Depends(get_services)):
    return services.books.create(current, payload)


@api.patch("/books/{book_id}")
@limiter.limit(BOOK_LIMIT)
def update_book(request: Request, book_id: str, payload: BookUpdatePayload,
                current: Principal = Depends(get_principal), services: Services = Depends(get_services)):
    return services.books.update(current, book_id, payload)


@api.patch("/books/{book_id}/status")
def set_book_status(book_id: str, payload: BookStatusPayload, current: Principal = Depends(get_principal),
                    services: Services = Depends(get_services)):
    return services.books.set_status(current, book_id, payload.status)


@api.delete("/books/{book_id}")
def delete_book(book_id: str, current: Principal = Depends(get_principal),
                services: Services = Depends(get_services)):
    services.books.delete(current, book_id)
    return {"deleted": True}


# ----- Orders -----

@api.post("/orders", status_code=201)
@limiter.limit(ORDER_LIMIT)
def create_order(request: Request, payload: OrderPayload, current: Principal = Depends(get_principal),
                 services: Services = Depends(get_services)):
    return services.orders.create(current, payload)


@api.get("/orders/user/{user_id}")
def list_user_orders(user_id: str, current: Principal = Depends(get_principal),
                     services: Services = Depends(get_services)):
    return {"items": services.orders.list_by_user(current, user_id)}


@api.get("/orders/librarian/{librarian_id}")
def list_librarian_orders(librarian_id: str, current: Principal = Depends(get_principal),
                          services: Services = Depends(get_services)):
    return {"items": services.orders.list_by_librarian(current, librarian_id)}


@api.get("/orders/{order_id}")
def get_order(order_id: str, current: Principal = Depends(get_principal),
              services: Services = Depends(get_services)):
    return services.orders.get(current, order_id)


@api.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusPayload, current: Principal = Depends(get_principal),
                        services: Services = Depends(get_services)):
    return services.orders.update_status(current, order_id, payload.status)


@api.delete("/orders/{order_id}")
def cancel_order(order_id: str, current: Principal = Depends(get_principal),
                 services: Services = Depends(get_services)):
    return services.orders.cancel(current, order_id)


# ----- Reviews -----

@api.post("/reviews", status_code=201)
def create_review(payload: ReviewPayload, current: Principal = Depends(get_principal),
                  services: Services = Depends(get_services)):
    return services.reviews.create(current, payload)


@api.get("/reviews/book/{book_id}")
def list_book_reviews(book_id: str, services: Services = Depends(get_services)):
    return services.reviews.list_by_book(book_id)


@api.get("/reviews/user/{user_id}")
def list_user_reviews(user_id: str, current: Principal = Depends(get_principal),
                      services: Services = Depends(get_services)):
    return {"items": services.reviews.list_by_user(user_id)}


@api.get("/reviews/can-review/{book_id}")
def can_review(book_id: str, current: Principal = Depends(get_principal),
               services: Services = Depends(get_services)):
    return services.reviews.can_review(current, book_id)


@api.get("/reviews/{review_id}")
def get_review(review_id: str, services: Services = Depends(get_services)):
    return services.reviews.get(review_id)


@api.patch("/reviews/{review_id}")
def update_review(review_id: str, payload: ReviewUpdatePayload, current: Principal = Depends(get_principal),
                  services: Services = Depends(get_services)):
    return services.reviews.update(current, review_id, payload)


@api.delete("/reviews/{review_id}")
def delete_review(review_id: str, current: Principal = Depends(get_principal),
                  services: Services = Depends(get_services)):
    services.reviews.delete(current, review_id)
    return {"deleted": True}


# ----- Wishlist -----

@api.post("/wishlist", status_code=201)
def add_to_wishlist(payload: WishlistPayload, current: Principal = Depends(get_principal),
                    services: Services = Depends(get_services)):
    return services.wishlist.add(current, payload.book_id)


@api.get("/wishlist/{user_id}")
def get_wishlist(user_id: str, current: Principal = Depends(get_principal),
                 services: Services = Depends(get_services)):
    return {"items": services.wishlist.list(current, user_id)}


@api.delete("/wishlist/{entry_id}")
def remove_from_wishlist(entry_id: str, current: Principal = Depends(get_principal),
                         services: Services = Depends(get_services)):
    services.wishlist.remove(current, entry_id)
    return {"deleted": True}


# ----- Payments -----

@api.post("/payment/create-intent")
def create_payment_intent(payload: IntentPayload, current: Principal = Depends(get_principal),
                          services: Services = Depends(get_services)):
    return services.payments.create_intent(current, payload)


@api.post("/payment/confirm")
def confirm_payment(payload: ConfirmPayload, current: Principal = Depends(get_principal),
                    services: Services = Depends(get_services)):
    return services.payments.confirm(current, payload)


@api.post("/payment/webhook")
async def payment_webhook(request: Request, stripe_signature: Optional[str] = Header(default=None),
                          services: Services = Depends(get_services)):
    payload = await request.body()
    return await run_in_threadpool(services.payments.handle_webhook, payload, stripe_signature)


@api.get("/payment/history")
def payment_history(current: Principal = Depends(get_principal), services: Services = Depends(get_services)):
    return {"items": services.payments.history(current)}


@api.get("/payment/{payment_id}")
def get_payment(payment_id: str, current: Principal = Depends(get_principal),
                services: Services = Depends(get_services)):
    return services.payments.get(current, payment_id)


# ----- App -----

def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None, verifier=None,
               gateway=None, image_host=None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    if db is None:
        db = connect(settings)

    app = FastAPI(title="BookNest API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    limiter.enabled = settings.rate_limit_enabled
    app.state.limiter = limiter
    app.state.settings = settings
    app.state.db = db
    app.state.services = None
    if db is not None:
        app.state.services = Services(
            db,
            verifier or SignedTokenVerifier(settings.secret_key, settings.token_ttl_hours),
            gateway or StripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret),
            image_host or ImgBBHost(settings.imgbb_api_key),
            settings.payment_currency,
        )

    @app.middleware("http")
    async def log_request(request: Request, call_next):
        logger.debug(f"Incoming request: {request.method} {request.url.path}")
        return await call_next(request)

    @app.on_event("startup")
    def prepare_database():
        if app.state.db is None:
            return
        ensure_indexes(app.state.db)
        if settings.admin_email and settings.admin_password:
            app.state.services.accounts.bootstrap_admin(
                settings.admin_email, settings.admin_password, settings.admin_name)

    app.include_router(health)
    app.include_router(api)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
