from decimal import Decimal

import pytest

from ordering import cart, errors, models, schemas


def add(client, headers, product_id, quantity=1, options=(), instructions=None):
    return client.post(
        "/cart",
        json={
            "product_id": product_id,
            "quantity": quantity,
            "selected_options": list(options),
            "special_instructions": instructions,
        },
        headers=headers,
    )


def test_cart_requires_authentication(client, menu):
    assert add(client, {}, menu.bread.id).status_code == 401
    assert client.get("/cart").status_code == 401


def test_plain_items_merge_by_summing_quantity(client, auth_headers, menu):
    r = add(client, auth_headers, menu.bread.id, 2)
    assert r.status_code == 201
    assert Decimal(r.json()["items"][0]["line_total"]) == Decimal("10.00")

    r = add(client, auth_headers, menu.bread.id, 1)
    body = r.json()
    assert len(body["items"]) == 1
    assert body["items"][0]["quantity"] == 3
    assert Decimal(body["items"][0]["line_total"]) == Decimal("15.00")
    assert Decimal(body["subtotal"]) == Decimal("15.00")


def test_items_with_options_are_never_merged(client, auth_headers, menu):
    add(client, auth_headers, menu.pizza.id, 1, [menu.cheese])
    add(client, auth_headers, menu.pizza.id, 1, [menu.cheese])
    add(client, auth_headers, menu.pizza.id, 1)
    add(client, auth_headers, menu.pizza.id, 1, [menu.olives])

    items = client.get("/cart", headers=auth_headers).json()["items"]
    assert len(items) == 4
    assert sorted(item["quantity"] for item in items) == [1, 1, 1, 1]


def test_selected_options_are_captured(client, auth_headers, menu):
    body = add(client, auth_headers, menu.pizza.id, 1, [menu.cheese]).json()
    item = body["items"][0]
    assert item["selected_options"][0]["name"] == "Extra Cheese"
    assert Decimal(item["selected_options"][0]["price_modifier"]) == Decimal("1.50")
    assert Decimal(item["unit_price"]) == Decimal("9.50")
    assert Decimal(item["line_total"]) == Decimal("9.50")


def test_different_instructions_stay_separate(client, auth_headers, menu):
    add(client, auth_headers, menu.bread.id, 1, instructions="extra crispy")
    add(client, auth_headers, menu.bread.id, 1)
    add(client, auth_headers, menu.bread.id, 2, instructions="extra crispy")

    items = client.get("/cart", headers=auth_headers).json()["items"]
    quantities = {item["special_instructions"]: item["quantity"] for item in items}
    assert quantities == {"extra crispy": 3, None: 1}


def test_quantity_below_one_is_rejected(client, auth_headers, menu):
    r = add(client, auth_headers, menu.bread.id, 0)
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"


def test_missing_required_option_is_rejected(client, auth_headers, menu):
    r = add(client, auth_headers, menu.coffee.id, 1)
    assert r.status_code == 400
    assert r.json()["detail"] == "Please select an option for Size"


def test_option_from_another_product_is_rejected(client, auth_headers, menu):
    r = add(client, auth_headers, menu.coffee.id, 1, [menu.cheese])
    assert r.status_code == 400


def test_max_selections_enforced(client, auth_headers, menu):
    r = add(client, auth_headers, menu.pizza.id, 1, [menu.cheese, menu.olives, menu.basil])
    assert r.status_code == 400
    assert "at most 2" in r.json()["detail"]


def test_unknown_product_is_not_found(client, auth_headers, menu):
    assert add(client, auth_headers, 9999).status_code == 404


def test_set_quantity_updates_and_zero_removes(client, auth_headers, menu):
    item_id = add(client, auth_headers, menu.bread.id, 1).json()["items"][0]["id"]

    r = client.patch(f"/cart/{item_id}", json={"quantity": 4}, headers=auth_headers)
    assert r.json()["items"][0]["quantity"] == 4

    r = client.patch(f"/cart/{item_id}", json={"quantity": 0}, headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["items"] == []


def test_set_quantity_on_someone_elses_item_is_not_found(client, auth_headers, other_headers, menu):
    item_id = add(client, auth_headers, menu.bread.id, 1).json()["items"][0]["id"]
    r = client.patch(f"/cart/{item_id}", json={"quantity": 3}, headers=other_headers)
    assert r.status_code == 404


def test_remove_is_idempotent(client, auth_headers, menu):
    item_id = add(client, auth_headers, menu.bread.id, 1).json()["items"][0]["id"]
    assert client.delete(f"/cart/{item_id}", headers=auth_headers).status_code == 200
    assert client.delete(f"/cart/{item_id}", headers=auth_headers).status_code == 200
    assert client.delete("/cart/424242", headers=auth_headers).status_code == 200


def test_clear_only_touches_callers_cart(client, auth_headers, other_headers, menu):
    add(client, auth_headers, menu.bread.id, 1)
    add(client, other_headers, menu.bread.id, 2)

    client.delete("/cart", headers=auth_headers)

    assert client.get("/cart", headers=auth_headers).json()["items"] == []
    assert client.get("/cart", headers=other_headers).json()["item_count"] == 2


def test_cart_reads_current_price_but_keeps_captured_modifier(client, auth_headers, db, menu):
    add(client, auth_headers, menu.pizza.id, 1, [menu.cheese])

    menu.pizza.price = Decimal("9.00")
    menu.pizza.option_groups[0].options[0].price_modifier = Decimal("3.00")
    db.commit()

    item = client.get("/cart", headers=auth_headers).json()["items"][0]
    assert Decimal(item["product"]["price"]) == Decimal("9.00")
    assert Decimal(item["unit_price"]) == Decimal("10.50")


def test_insert_race_falls_back_to_increment(db, user, menu, monkeypatch):
    cart.add(db, user.id, menu.bread.id, 1)

    real_increment = cart._increment
    calls = []

    def stale_increment(*args):
        calls.append(args)
        if len(calls) == 1:
            return 0  # as if the other request had not committed yet
        return real_increment(*args)

    monkeypatch.setattr(cart, "_increment", stale_increment)
    item = cart.add(db, user.id, menu.bread.id, 2)

    assert item.quantity == 3
    assert len(calls) == 2
    assert db.query(models.CartItem).filter_by(user_id=user.id).count() == 1


def test_service_rejects_quantity_below_one(db, user, menu):
    with pytest.raises(errors.ValidationError):
        cart.add(db, user.id, menu.bread.id, 0)


def test_merge_local_cart_at_sign_in(client, auth_headers, menu):
    add(client, auth_headers, menu.bread.id, 1)
    r = client.post(
        "/cart/merge",
        json={
            "items": [
                {"product_id": menu.bread.id, "quantity": 2},
                {"product_id": menu.pizza.id, "quantity": 1, "selected_options": [menu.cheese]},
                {"product_id": menu.coffee.id, "quantity": 1},
                {"product_id": 9999, "quantity": 1},
            ]
        },
        headers=auth_headers,
    )
    assert r.status_code == 200
    items = r.json()["items"]
    assert len(items) == 2
    bread = next(item for item in items if item["product_id"] == menu.bread.id)
    assert bread["quantity"] == 3


def test_resolve_orders_selection_by_sort_order(menu):
    selected = cart.resolve_selected_options(
        menu.pizza,
        [schemas.SelectedOptionIn(**menu.olives), schemas.SelectedOptionIn(**menu.cheese)],
    )
    assert [opt.name for opt in selected] == ["Extra Cheese", "Olives"]


def test_repeated_option_is_rejected(menu):
    with pytest.raises(errors.ValidationError):
        cart.resolve_selected_options(
            menu.pizza,
            [schemas.SelectedOptionIn(**menu.cheese), schemas.SelectedOptionIn(**menu.cheese)],
        )
