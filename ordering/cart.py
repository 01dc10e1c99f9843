"""Cart store for signed-in users.

Items without options are merged per ``(user, product, instructions)`` using
a single ``UPDATE ... SET quantity = quantity + n``; the unique constraint on
``cart_items.merge_key`` catches the insert race. Items with options are
always stored as their own row.

Anonymous carts live only in the browser; :func:`merge_local` folds one into
the server cart once, at sign-in.
"""

import logging
from typing import List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from . import crud, errors, models, schemas
from .pricing import PricedLine, ZERO, quantize_money

logger = logging.getLogger(__name__)


def resolve_selected_options(
    product: models.Product, selections: Sequence[schemas.SelectedOptionIn]
) -> List[schemas.SelectedOption]:
    """Check selections against the product's option groups and capture them."""
    groups = {group.id: group for group in product.option_groups}
    chosen = {}
    for selection in selections:
        group = groups.get(selection.group_id)
        option = None
        if group is not None:
            option = next((opt for opt in group.options if opt.id == selection.option_id), None)
        if option is None:
            raise errors.ValidationError(f"Invalid option selection for {product.name}")
        if option.id in chosen:
            raise errors.ValidationError(f"Option {option.name} selected more than once")
        chosen[option.id] = (group, option)

    for group in product.option_groups:
        count = sum(1 for grp, _ in chosen.values() if grp.id == group.id)
        if group.is_required and count < max(1, group.min_selections):
            raise errors.ValidationError(f"Please select an option for {group.name}")
        if 0 < count < group.min_selections:
            raise errors.ValidationError(
                f"Select at least {group.min_selections} options for {group.name}"
            )
        if count > group.max_selections:
            raise errors.ValidationError(
                f"Select at most {group.max_selections} options for {group.name}"
            )

    ordered = sorted(
        chosen.values(), key=lambda pair: (pair[0].sort_order, pair[0].id, pair[1].sort_order, pair[1].id)
    )
    return [
        schemas.SelectedOption(
            group_id=group.id,
            group_name=group.name,
            option_id=option.id,
            name=option.name,
            price_modifier=option.price_modifier,
        )
        for group, option in ordered
    ]


def _merge_key(instructions: Optional[str]) -> str:
    return (instructions or "").strip()


def _get_orderable_product(db: Session, product_id: int) -> models.Product:
    product = crud.get_product(db, product_id)
    if not product or not product.is_available:
        raise errors.NotFound("Product not found")
    return product


def _increment(db: Session, user_id: int, product_id: int, merge_key: str, quantity: int) -> int:
    result = db.execute(
        update(models.CartItem)
        .where(
            models.CartItem.user_id == user_id,
            models.CartItem.product_id == product_id,
            models.CartItem.merge_key == merge_key,
        )
        .values(quantity=models.CartItem.quantity + quantity)
    )
    return result.rowcount


def _find_plain_item(db: Session, user_id: int, product_id: int, merge_key: str):
    return (
        db.query(models.CartItem)
        .filter(
            models.CartItem.user_id == user_id,
            models.CartItem.product_id == product_id,
            models.CartItem.merge_key == merge_key,
        )
        .one()
    )


def add(
    db: Session,
    user_id: int,
    product_id: int,
    quantity: int,
    selections: Sequence[schemas.SelectedOptionIn] = (),
    instructions: Optional[str] = None,
) -> models.CartItem:
    if quantity < 1:
        raise errors.ValidationError("Quantity must be at least 1")
    product = _get_orderable_product(db, product_id)
    selected = resolve_selected_options(product, selections)
    instructions = instructions.strip() if instructions and instructions.strip() else None

    if selected:
        item = models.CartItem(
            user_id=user_id,
            product_id=product_id,
            quantity=quantity,
            selected_options=[opt.model_dump(mode="json") for opt in selected],
            special_instructions=instructions,
            merge_key=None,
        )
        db.add(item)
        db.commit()
        db.refresh(item)
        logger.info("Cart add user=%s product=%s qty=%s (configured)", user_id, product_id, quantity)
        return item

    merge_key = _merge_key(instructions)
    if not _increment(db, user_id, product_id, merge_key, quantity):
        db.add(
            models.CartItem(
                user_id=user_id,
                product_id=product_id,
                quantity=quantity,
                selected_options=[],
                special_instructions=instructions,
                merge_key=merge_key,
            )
        )
        try:
            db.commit()
        except IntegrityError:
            # another request inserted the same row first
            db.rollback()
            _increment(db, user_id, product_id, merge_key, quantity)
            db.commit()
    else:
        db.commit()

    logger.info("Cart add user=%s product=%s qty=%s", user_id, product_id, quantity)
    return _find_plain_item(db, user_id, product_id, merge_key)


def _owned_item(db: Session, user_id: int, item_id: int):
    return (
        db.query(models.CartItem)
        .filter(models.CartItem.id == item_id, models.CartItem.user_id == user_id)
        .first()
    )


def set_quantity(db: Session, user_id: int, item_id: int, quantity: int) -> Optional[models.CartItem]:
    """Returns the updated item, or ``None`` when a quantity <= 0 removed it."""
    if quantity <= 0:
        remove(db, user_id, item_id)
        return None
    item = _owned_item(db, user_id, item_id)
    if item is None:
        raise errors.NotFound("Cart item not found")
    item.quantity = quantity
    db.commit()
    db.refresh(item)
    return item


def remove(db: Session, user_id: int, item_id: int) -> None:
    db.query(models.CartItem).filter(
        models.CartItem.id == item_id, models.CartItem.user_id == user_id
    ).delete(synchronize_session=False)
    db.commit()


def clear(db: Session, user_id: int) -> None:
    db.query(models.CartItem).filter(models.CartItem.user_id == user_id).delete(
        synchronize_session=False
    )
    db.commit()


def _load_items(db: Session, user_id: int):
    return (
        db.query(models.CartItem)
        .options(joinedload(models.CartItem.product))
        .filter(models.CartItem.user_id == user_id)
        .order_by(models.CartItem.created_at, models.CartItem.id)
        .all()
    )


def _to_line(item: models.CartItem) -> PricedLine:
    product = item.product
    return PricedLine(
        product_id=product.id,
        product_name=product.name,
        base_price=product.price,
        quantity=item.quantity,
        selected_options=[schemas.SelectedOption.model_validate(opt) for opt in item.selected_options or []],
        special_instructions=item.special_instructions,
        available_for_delivery=product.available_for_delivery and product.is_available,
        available_for_pickup=product.available_for_pickup and product.is_available,
    )


def list_items(db: Session, user_id: int) -> schemas.CartOut:
    """The cart joined with current catalog prices."""
    items = []
    subtotal = ZERO
    for item in _load_items(db, user_id):
        line = _to_line(item)
        subtotal += line.line_total
        items.append(
            schemas.CartItemOut(
                id=item.id,
                product_id=item.product_id,
                quantity=item.quantity,
                selected_options=line.selected_options,
                special_instructions=item.special_instructions,
                product=schemas.ProductSnapshot.model_validate(item.product),
                unit_price=line.unit_price,
                line_total=line.line_total,
            )
        )
    return schemas.CartOut(
        items=items,
        subtotal=quantize_money(subtotal),
        item_count=sum(item.quantity for item in items),
    )


def priced_lines(db: Session, user_id: int) -> List[PricedLine]:
    return [_to_line(item) for item in _load_items(db, user_id)]


def merge_local(db: Session, user_id: int, items: Sequence[schemas.CartItemCreate]) -> schemas.CartOut:
    """Fold an anonymous browser cart into the user's cart at sign-in.

    Entries whose product has gone or whose options no longer validate are
    skipped; the rest follow the same merge rule as :func:`add`.
    """
    for entry in items:
        try:
            add(
                db,
                user_id,
                entry.product_id,
                entry.quantity,
                entry.selected_options,
                entry.special_instructions,
            )
        except (errors.ValidationError, errors.NotFound) as exc:
            logger.info("Skipping local cart entry for product %s: %s", entry.product_id, exc.message)
    return list_items(db, user_id)
