import logging
from functools import lru_cache

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from . import auth, cart, crud, errors, models, notifications, orders, payments, schemas, webhooks
from .config import settings
from .db import Base, SessionLocal, engine, get_db
from .deps import CorrelationIdFilter, correlation_id_var, get_correlation_id

# ----- Logging -----
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] [ordering] [cid=%(correlation_id)s] %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(CorrelationIdFilter())
logger = logging.getLogger("ordering")

app = FastAPI(title=settings.PROJECT_NAME, dependencies=[Depends(get_correlation_id)])


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        crud.ensure_admin_user(db)
        crud.get_settings_row(db)
        crud.seed_menu(db)
    finally:
        db.close()


@app.exception_handler(errors.OrderingError)
async def ordering_error_handler(request: Request, exc: errors.OrderingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, "correlationId": correlation_id_var.get()},
    )


# ----- Dependencies -----


def get_restaurant_config(db: Session = Depends(get_db)) -> schemas.RestaurantConfig:
    return crud.get_restaurant_config(db)


@lru_cache
def _stripe_provider() -> payments.StripeProvider:
    return payments.StripeProvider(
        settings.STRIPE_SECRET_KEY,
        currency=settings.STRIPE_CURRENCY,
        timeout=settings.PAYMENT_TIMEOUT_SECONDS,
    )


def get_payment_provider() -> payments.PaymentProvider:
    if not settings.STRIPE_SECRET_KEY:
        raise errors.GatewayError("Card payments are not configured")
    return _stripe_provider()


# ----- Infra -----


@app.get("/health")
def health():
    return {"status": "ok", "service": "ordering"}


# ----- Auth -----


@app.post("/auth/register", response_model=schemas.UserOut, status_code=201)
def register(user_in: schemas.UserCreate, db: Session = Depends(get_db)):
    if crud.get_user_by_email(db, user_in.email):
        raise errors.ValidationError("Email already registered")
    return crud.create_user(db, user_in.email, user_in.password, full_name=user_in.full_name)


@app.post("/auth/login", response_model=schemas.Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    user = crud.authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise errors.ValidationError("Incorrect email or password")
    token = auth.create_access_token({"sub": str(user.id)})
    return {"access_token": token, "token_type": "bearer"}


@app.get("/me", response_model=schemas.UserOut)
def get_me(current_user: models.User = Depends(auth.get_current_user)):
    return current_user


# ----- Menu -----


@app.get("/menu", response_model=list[schemas.ProductOut])
def get_menu(db: Session = Depends(get_db)):
    return crud.list_menu(db)


@app.post("/menu", response_model=schemas.ProductOut, status_code=201)
def create_menu_item(
    product_in: schemas.ProductCreate,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
):
    return crud.create_product(db, product_in)


@app.get("/products/{product_id}/options", response_model=list[schemas.OptionGroupOut])
def get_product_options(product_id: int, db: Session = Depends(get_db)):
    product = crud.get_product(db, product_id)
    if not product:
        raise errors.NotFound("Product not found")
    return product.option_groups


# ----- Cart -----


@app.get("/cart", response_model=schemas.CartOut)
def get_cart(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    return cart.list_items(db, current_user.id)


@app.post("/cart", response_model=schemas.CartOut, status_code=201)
def add_to_cart(
    item_in: schemas.CartItemCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    cart.add(
        db,
        current_user.id,
        item_in.product_id,
        item_in.quantity,
        item_in.selected_options,
        item_in.special_instructions,
    )
    return cart.list_items(db, current_user.id)


@app.post("/cart/merge", response_model=schemas.CartOut)
def merge_local_cart(
    merge_in: schemas.CartMergeRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    return cart.merge_local(db, current_user.id, merge_in.items)


@app.patch("/cart/{item_id}", response_model=schemas.CartOut)
def update_cart_item(
    item_id: int,
    update_in: schemas.CartItemUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    cart.set_quantity(db, current_user.id, item_id, update_in.quantity)
    return cart.list_items(db, current_user.id)


@app.delete("/cart/{item_id}")
def remove_cart_item(
    item_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    cart.remove(db, current_user.id, item_id)
    return {"ok": True}


@app.delete("/cart")
def clear_cart(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    cart.clear(db, current_user.id)
    return {"ok": True}


# ----- Checkout -----


@app.post("/checkout", response_model=schemas.CheckoutSessionOut)
def create_checkout_session(
    checkout_in: schemas.CheckoutRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
    config: schemas.RestaurantConfig = Depends(get_restaurant_config),
    provider: payments.PaymentProvider = Depends(get_payment_provider),
):
    return payments.create_session(db, provider, current_user, checkout_in, config)


@app.post("/checkout/process", response_model=schemas.ProcessSessionOut)
def process_checkout_session(
    process_in: schemas.ProcessSessionRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
    config: schemas.RestaurantConfig = Depends(get_restaurant_config),
    provider: payments.PaymentProvider = Depends(get_payment_provider),
):
    order, created = payments.process_session(
        db, provider, current_user, process_in.session_id, config
    )
    if created:
        background_tasks.add_task(
            notifications.send_order_confirmation,
            notifications.order_email(order, current_user),
            config,
        )
    return schemas.ProcessSessionOut(
        order_id=order.id, order_number=order.order_number, total=order.total
    )


# ----- Orders -----


@app.post("/orders", response_model=schemas.OrderOut, status_code=201)
def create_order(
    order_in: schemas.OrderCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
    config: schemas.RestaurantConfig = Depends(get_restaurant_config),
):
    if order_in.payment_status != "pending" and not current_user.is_admin:
        raise errors.ValidationError("Payment status must be pending for direct orders")
    lines = orders.lines_from_request(db, order_in.items)
    totals = orders.validate_checkout(lines, order_in, config, current_user)
    order = orders.create_order(
        db,
        current_user.id,
        lines,
        order_in,
        totals,
        payment_method=order_in.payment_method,
        payment_status=order_in.payment_status,
    )
    background_tasks.add_task(
        notifications.send_order_confirmation,
        notifications.order_email(order, current_user),
        config,
    )
    return order


@app.get("/orders", response_model=list[schemas.OrderOut])
def list_my_orders(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    return orders.list_orders(db, user_id=current_user.id)


@app.get("/orders/{order_id}", response_model=schemas.OrderOut)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    return orders.get_order(db, order_id, current_user)


@app.post("/orders/{order_id}/cancel", response_model=schemas.OrderOut)
def cancel_order(
    order_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
    config: schemas.RestaurantConfig = Depends(get_restaurant_config),
):
    order = orders.cancel_order(db, current_user.id, order_id, config)
    background_tasks.add_task(
        notifications.send_order_status_update,
        notifications.order_email(order, current_user),
        config,
    )
    return order


# ----- Admin -----


@app.get("/admin/orders", response_model=list[schemas.OrderOut])
def list_all_orders(
    status: str | None = None,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
):
    return orders.list_orders(db, status=status)


@app.patch("/admin/orders/{order_id}/status", response_model=schemas.OrderOut)
def update_order_status(
    order_id: int,
    status_in: schemas.OrderStatusUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
    config: schemas.RestaurantConfig = Depends(get_restaurant_config),
):
    order, changed = orders.update_order_status(db, order_id, status_in.status)
    if changed:
        background_tasks.add_task(
            notifications.send_order_status_update,
            notifications.order_email(order, order.user),
            config,
        )
    return order


@app.patch("/admin/orders/{order_id}/payment-status", response_model=schemas.OrderOut)
def update_payment_status(
    order_id: int,
    payment_in: schemas.PaymentStatusUpdate,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
):
    order, _changed = orders.update_payment_status(db, order_id, payment_in.payment_status)
    return order


@app.get("/settings", response_model=schemas.RestaurantConfig)
def read_settings(config: schemas.RestaurantConfig = Depends(get_restaurant_config)):
    return config


@app.put("/admin/settings", response_model=schemas.RestaurantConfig)
def update_settings(
    settings_in: schemas.RestaurantSettingsUpdate,
    db: Session = Depends(get_db),
    _: models.User = Depends(auth.require_admin),
):
    return crud.update_settings(db, settings_in)


# ----- Webhooks -----


@app.post("/webhooks/payment", response_model=schemas.WebhookAck)
async def payment_webhook(
    request: Request,
    stripe_signature: str | None = Header(None),
    db: Session = Depends(get_db),
):
    payload = await request.body()
    return await run_in_threadpool(
        webhooks.handle_event, db, payload, stripe_signature, settings.STRIPE_WEBHOOK_SECRET
    )
