import logging
from decimal import Decimal

from sqlalchemy.orm import Session, selectinload

from . import auth, models, schemas
from .config import settings

logger = logging.getLogger(__name__)

SETTINGS_ROW_ID = 1


def get_user_by_email(db: Session, email: str):
    return db.query(models.User).filter(models.User.email == email.lower()).first()


def create_user(
    db: Session,
    email: str,
    password: str,
    full_name: str | None = None,
    is_admin: bool = False,
):
    user = models.User(
        email=email.lower(),
        password_hash=auth.get_password_hash(password),
        full_name=full_name,
        is_admin=is_admin,
        email_verified=is_admin,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def ensure_admin_user(db: Session):
    if not settings.ADMIN_EMAIL or not settings.ADMIN_PASSWORD:
        return None
    existing = get_user_by_email(db, settings.ADMIN_EMAIL)
    if existing:
        return existing
    logger.info("Creating bootstrap admin %s", settings.ADMIN_EMAIL)
    return create_user(db, settings.ADMIN_EMAIL, settings.ADMIN_PASSWORD, is_admin=True)


def authenticate_user(db: Session, email: str, password: str):
    user = get_user_by_email(db, email)
    if not user:
        return None
    if not auth.verify_password(password, user.password_hash):
        return None
    return user


# ----- Catalog -----


def list_menu(db: Session):
    return (
        db.query(models.Product)
        .options(selectinload(models.Product.option_groups).selectinload(models.OptionGroup.options))
        .filter(models.Product.is_available == True)
        .order_by(models.Product.category, models.Product.name)
        .all()
    )


def get_product(db: Session, product_id: int):
    return db.query(models.Product).filter(models.Product.id == product_id).first()


def create_product(db: Session, product_in: schemas.ProductCreate):
    product = models.Product(
        name=product_in.name,
        description=product_in.description,
        price=product_in.price,
        category=product_in.category,
        image_url=product_in.image_url,
        available_for_delivery=product_in.available_for_delivery,
        available_for_pickup=product_in.available_for_pickup,
        is_popular=product_in.is_popular,
    )
    for group_in in product_in.option_groups:
        group = models.OptionGroup(
            name=group_in.name,
            is_required=group_in.is_required,
            min_selections=group_in.min_selections,
            max_selections=group_in.max_selections,
            sort_order=group_in.sort_order,
        )
        for option_in in group_in.options:
            group.options.append(
                models.Option(
                    name=option_in.name,
                    price_modifier=option_in.price_modifier,
                    is_default=option_in.is_default,
                    sort_order=option_in.sort_order,
                )
            )
        product.option_groups.append(group)
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


def seed_menu(db: Session):
    if db.query(models.Product).count() > 0:
        return
    samples = [
        {
            "name": "Margherita Pizza",
            "description": "Tomato, mozzarella, fresh basil.",
            "price": "8.00",
            "category": "Pizza",
            "is_popular": True,
            "option_groups": [
                {
                    "name": "Size",
                    "is_required": True,
                    "min_selections": 1,
                    "max_selections": 1,
                    "options": [
                        {"name": "Regular", "price_modifier": "0", "is_default": True},
                        {"name": "Large", "price_modifier": "2.50", "sort_order": 1},
                    ],
                },
                {
                    "name": "Extras",
                    "max_selections": 3,
                    "sort_order": 1,
                    "options": [
                        {"name": "Extra Cheese", "price_modifier": "1.50"},
                        {"name": "Olives", "price_modifier": "0.80", "sort_order": 1},
                        {"name": "Jalapenos", "price_modifier": "0.80", "sort_order": 2},
                    ],
                },
            ],
        },
        {
            "name": "Chicken Burger",
            "description": "Buttermilk chicken, slaw, brioche bun.",
            "price": "9.50",
            "category": "Burgers",
            "option_groups": [
                {
                    "name": "Sauce",
                    "max_selections": 2,
                    "options": [
                        {"name": "Garlic Mayo", "price_modifier": "0"},
                        {"name": "Hot Sauce", "price_modifier": "0", "sort_order": 1},
                    ],
                },
            ],
        },
        {
            "name": "Fries",
            "description": "Skin-on, sea salt.",
            "price": "3.00",
            "category": "Sides",
        },
        {
            "name": "Lemonade",
            "description": "Freshly squeezed.",
            "price": "2.75",
            "category": "Drinks",
            "available_for_delivery": False,
        },
    ]
    for item in samples:
        create_product(db, schemas.ProductCreate.model_validate(item))


# ----- Restaurant settings -----


def get_settings_row(db: Session):
    row = db.get(models.RestaurantSettings, SETTINGS_ROW_ID)
    if row is None:
        row = models.RestaurantSettings(
            id=SETTINGS_ROW_ID, delivery_fee=Decimal("0"), minimum_order=Decimal("0")
        )
        db.add(row)
        db.commit()
        db.refresh(row)
    return row


def get_restaurant_config(db: Session) -> schemas.RestaurantConfig:
    return schemas.RestaurantConfig.model_validate(get_settings_row(db))


def update_settings(db: Session, settings_in: schemas.RestaurantSettingsUpdate):
    row = get_settings_row(db)
    for key, value in settings_in.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(row, key, value)
    db.commit()
    db.refresh(row)
    return schemas.RestaurantConfig.model_validate(row)
