"""Cart mutations checked against live stock."""

import pytest
from bson import ObjectId

import cart
from config import CART_WRITE_ATTEMPTS


@pytest.fixture
def shirt(make_product):
    return make_product(title="Shirt", sizes=["M", "L"], stock={"M": 3, "L": 0})


def quantities(items):
    return {(i["product_id"], i.get("size")): i["quantity"] for i in items}


class TestLineKeys:

    def test_plain_key(self):
        assert cart.parse_line_key("abc123") == ("abc123", None)

    def test_composite_key(self):
        assert cart.parse_line_key("abc123-M") == ("abc123", "M")

    def test_size_containing_delimiter(self):
        assert cart.parse_line_key("abc123-X-L") == ("abc123", "X-L")

    def test_trailing_delimiter_has_no_size(self):
        assert cart.parse_line_key("abc123-") == ("abc123", None)

    def test_line_key_round_trips(self):
        item = {"product_id": "abc123", "size": "M", "quantity": 1}
        assert cart.parse_line_key(cart.line_key(item)) == ("abc123", "M")


class TestAddToCart:

    def test_sold_out_size_rejected(self, db, shirt):
        with pytest.raises(cart.InsufficientStock) as exc:
            cart.add_to_cart(db, "u1", shirt, "L", 1)
        assert "0 available for size L" in exc.value.message
        assert exc.value.detail["available"] == 0

    def test_combined_quantity_checked(self, db, shirt):
        items = cart.add_to_cart(db, "u1", shirt, "M", 2)
        assert quantities(items) == {(shirt, "M"): 2}

        with pytest.raises(cart.InsufficientStock) as exc:
            cart.add_to_cart(db, "u1", shirt, "M", 2)
        assert exc.value.detail == {"available": 3, "in_cart": 2}
        assert quantities(cart.read_cart(db, "u1")) == {(shirt, "M"): 2}

    def test_existing_line_incremented(self, db, shirt):
        cart.add_to_cart(db, "u1", shirt, "M", 1)
        items = cart.add_to_cart(db, "u1", shirt, "M", 2)
        assert quantities(items) == {(shirt, "M"): 3}

    def test_sizes_are_distinct_lines(self, db, make_product):
        pid = make_product(sizes=["S", "M"], stock={"S": 2, "M": 2})
        cart.add_to_cart(db, "u1", pid, "S", 1)
        items = cart.add_to_cart(db, "u1", pid, "M", 1)
        assert quantities(items) == {(pid, "S"): 1, (pid, "M"): 1}

    def test_size_required_for_sized_product(self, db, shirt):
        with pytest.raises(cart.SizeRequired):
            cart.add_to_cart(db, "u1", shirt, None, 1)

    def test_size_dropped_for_unsized_product(self, db, make_product):
        pid = make_product(stock=4)
        items = cart.add_to_cart(db, "u1", pid, "M", 1)
        assert quantities(items) == {(pid, None): 1}

    def test_non_positive_quantity(self, db, make_product):
        pid = make_product(stock=4)
        with pytest.raises(cart.InvalidQuantity):
            cart.add_to_cart(db, "u1", pid, None, 0)

    def test_unknown_product(self, db):
        with pytest.raises(cart.ProductNotFound):
            cart.add_to_cart(db, "u1", str(ObjectId()), None, 1)
        with pytest.raises(cart.ProductNotFound):
            cart.add_to_cart(db, "u1", "not-an-id", None, 1)

    @pytest.mark.parametrize("quantity", [1, 2, 3, 4, 5])
    def test_stock_ceiling(self, db, make_product, quantity):
        pid = make_product(stock=3)
        if quantity <= 3:
            items = cart.add_to_cart(db, "u1", pid, None, quantity)
            assert quantities(items) == {(pid, None): quantity}
        else:
            with pytest.raises(cart.InsufficientStock):
                cart.add_to_cart(db, "u1", pid, None, quantity)
            assert db["cart"].find_one({"user_id": "u1"}) is None

    def test_carts_are_per_user(self, db, make_product):
        pid = make_product(stock=3)
        cart.add_to_cart(db, "u1", pid, None, 3)
        items = cart.add_to_cart(db, "u2", pid, None, 3)
        assert quantities(items) == {(pid, None): 3}


class TestUpdateQuantity:

    def test_bounded_by_current_stock(self, db, make_product):
        pid = make_product(sizes=["M"], stock={"M": 5})
        cart.add_to_cart(db, "u1", pid, "M", 1)

        items = cart.update_quantity(db, "u1", f"{pid}-M", 5)
        assert quantities(items) == {(pid, "M"): 5}

        with pytest.raises(cart.InsufficientStock):
            cart.update_quantity(db, "u1", f"{pid}-M", 6)

    def test_rechecks_shrunken_stock(self, db, make_product):
        pid = make_product(stock=5)
        cart.add_to_cart(db, "u1", pid, None, 2)
        db["product"].update_one({"_id": ObjectId(pid)}, {"$set": {"stock": 2}})

        with pytest.raises(cart.InsufficientStock) as exc:
            cart.update_quantity(db, "u1", pid, 3)
        assert exc.value.detail["available"] == 2

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_non_positive_quantity(self, db, make_product, quantity):
        pid = make_product(stock=5)
        cart.add_to_cart(db, "u1", pid, None, 1)
        with pytest.raises(cart.InvalidQuantity):
            cart.update_quantity(db, "u1", pid, quantity)

    def test_missing_line(self, db, shirt):
        cart.add_to_cart(db, "u1", shirt, "M", 1)
        with pytest.raises(cart.LineNotFound):
            cart.update_quantity(db, "u1", f"{shirt}-L", 1)
        with pytest.raises(cart.LineNotFound):
            cart.update_quantity(db, "u1", shirt, 1)


class TestRemoveLine:

    def test_missing_line_is_noop(self, db, shirt):
        cart.add_to_cart(db, "u1", shirt, "M", 1)
        before = db["cart"].find_one({"user_id": "u1"})

        items = cart.remove_line(db, "u1", f"{shirt}-L")

        after = db["cart"].find_one({"user_id": "u1"})
        assert quantities(items) == {(shirt, "M"): 1}
        assert after["items"] == before["items"]
        assert after["version"] == before["version"]

    def test_missing_cart_is_noop(self, db):
        assert cart.remove_line(db, "nobody", "abc") == []
        assert cart.remove_line(db, "nobody") == []
        assert db["cart"].count_documents({}) == 0

    def test_removes_only_matching_size(self, db, make_product):
        pid = make_product(sizes=["S", "M"], stock={"S": 2, "M": 2})
        cart.add_to_cart(db, "u1", pid, "S", 1)
        cart.add_to_cart(db, "u1", pid, "M", 1)

        items = cart.remove_line(db, "u1", f"{pid}-S")
        assert quantities(items) == {(pid, "M"): 1}

    def test_no_key_clears_cart(self, db, shirt, make_product):
        other = make_product(stock=2)
        cart.add_to_cart(db, "u1", shirt, "M", 1)
        cart.add_to_cart(db, "u1", other, None, 1)

        assert cart.remove_line(db, "u1") == []
        assert db["cart"].find_one({"user_id": "u1"})["items"] == []


class TestReadCart:

    def test_joins_product_details(self, db, shirt):
        cart.add_to_cart(db, "u1", shirt, "M", 2)
        [line] = cart.read_cart(db, "u1")
        assert line["key"] == f"{shirt}-M"
        assert line["title"] == "Shirt"
        assert line["available"] == 3
        assert line["stock_message"] == "Only 3 left in stock for size M"

    def test_purges_invalid_lines(self, db, make_product):
        keep = make_product(stock=5)
        gone = make_product(stock=5)
        db["cart"].insert_one({
            "user_id": "u1",
            "version": 1,
            "items": [
                {"product_id": keep, "quantity": 1, "size": None},
                {"product_id": gone, "quantity": 1, "size": None},
                {"product_id": keep, "quantity": None, "size": "M"},
                {"product_id": keep, "quantity": 0, "size": "L"},
                {"product_id": None, "quantity": 1},
                {"product_id": "garbage", "quantity": 1},
            ],
        })
        db["product"].delete_one({"_id": ObjectId(gone)})

        lines = cart.read_cart(db, "u1")

        assert [(l["product_id"], l["quantity"]) for l in lines] == [(keep, 1)]
        stored = db["cart"].find_one({"user_id": "u1"})
        assert stored["items"] == [{"product_id": keep, "quantity": 1, "size": None}]
        assert stored["version"] == 2

    def test_clean_cart_not_rewritten(self, db, make_product):
        pid = make_product(stock=5)
        cart.add_to_cart(db, "u1", pid, None, 1)
        version = db["cart"].find_one({"user_id": "u1"})["version"]
        cart.read_cart(db, "u1")
        assert db["cart"].find_one({"user_id": "u1"})["version"] == version

    def test_empty(self, db):
        assert cart.read_cart(db, "u1") == []


class TestConcurrentWrites:

    def test_lost_race_revalidates(self, db, make_product, monkeypatch):
        pid = make_product(stock=5)
        cart.add_to_cart(db, "u1", pid, None, 1)
        real_save = cart._save_cart
        calls = []

        def racing_save(database, doc, items):
            calls.append(items)
            if len(calls) == 1:
                # another request raises the line to 4 between our read and write
                database["cart"].update_one(
                    {"user_id": "u1"},
                    {"$set": {"items": [{"product_id": pid, "quantity": 4, "size": None}]}, "$inc": {"version": 1}},
                )
            return real_save(database, doc, items)

        monkeypatch.setattr(cart, "_save_cart", racing_save)

        with pytest.raises(cart.InsufficientStock) as exc:
            cart.add_to_cart(db, "u1", pid, None, 2)
        assert exc.value.detail["in_cart"] == 4
        assert len(calls) == 1
        assert db["cart"].find_one({"user_id": "u1"})["items"][0]["quantity"] == 4

    def test_gives_up_after_bounded_attempts(self, db, make_product, monkeypatch):
        pid = make_product(stock=5)
        calls = []

        def always_lose(database, doc, items):
            calls.append(1)
            return False

        monkeypatch.setattr(cart, "_save_cart", always_lose)

        with pytest.raises(cart.CartConflict):
            cart.add_to_cart(db, "u1", pid, None, 1)
        assert len(calls) == CART_WRITE_ATTEMPTS

    def test_cart_without_version_field(self, db, make_product):
        pid = make_product(stock=5)
        db["cart"].insert_one({"user_id": "u1", "items": [{"product_id": pid, "quantity": 1}]})

        items = cart.add_to_cart(db, "u1", pid, None, 1)

        assert items[0]["quantity"] == 2
        stored = db["cart"].find_one({"user_id": "u1"})
        assert stored["version"] == 1
        cart.update_quantity(db, "u1", pid, 3)
        assert db["cart"].find_one({"user_id": "u1"})["version"] == 2

    def test_read_purges_cart_without_version_field(self, db, make_product):
        pid = make_product(stock=5)
        db["cart"].insert_one({"user_id": "u1", "items": [
            {"product_id": pid, "quantity": 1},
            {"product_id": "garbage", "quantity": 1},
        ]})

        lines = cart.read_cart(db, "u1")

        assert [line["product_id"] for line in lines] == [pid]
        assert len(db["cart"].find_one({"user_id": "u1"})["items"]) == 1
