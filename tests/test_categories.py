from cointrail.models.enums import TransactionType


def test_add_trims_and_lists_by_type(services):
    categories = services["category_service"]
    assert categories.add("  Food ", TransactionType.EXPENSE).data.name == "Food"
    categories.add("Salary", TransactionType.INCOME)
    categories.add("Bills", TransactionType.EXPENSE)

    assert [c.name for c in categories.list()] == ["Bills", "Food", "Salary"]
    assert [c.name for c in categories.list(TransactionType.INCOME)] == ["Salary"]


def test_empty_name_rejected(services):
    result = services["category_service"].add("   ", TransactionType.EXPENSE)
    assert result.status_code == 400
    assert result.error == "Category name is required."


def test_duplicate_is_case_insensitive_per_type(services):
    categories = services["category_service"]
    assert categories.add("Food", TransactionType.EXPENSE).success
    assert categories.add("FOOD", TransactionType.EXPENSE).status_code == 400
    # Same name under the other type is a different category.
    assert categories.add("food", TransactionType.INCOME).success


def test_update_and_get_name(services):
    categories = services["category_service"]
    created = categories.add("Fod", TransactionType.EXPENSE).data

    result = categories.update(created.id, name="Food")

    assert result.success
    assert categories.get_name(created.id) == "Food"
    assert categories.get_name("unknown") == "N/A"
    assert categories.get_name(None, default="-") == "-"


def test_update_to_existing_name_rejected(services):
    categories = services["category_service"]
    categories.add("Food", TransactionType.EXPENSE)
    other = categories.add("Bills", TransactionType.EXPENSE).data
    assert categories.update(other.id, name="food").status_code == 400


def test_delete_and_delete_all(services, fake_supabase):
    categories = services["category_service"]
    food = categories.add("Food", TransactionType.EXPENSE).data
    categories.add("Salary", TransactionType.INCOME)

    assert categories.delete(food.id).success
    assert [c.name for c in categories.list()] == ["Salary"]
    assert categories.delete(food.id).status_code == 404

    assert categories.delete_all().success
    assert categories.list() == []
    assert fake_supabase.tables["categories"] == []


def test_backend_failure_returns_502(services, fake_supabase):
    categories = services["category_service"]
    categories.refetch()
    fake_supabase.fail("categories")
    assert categories.add("Food", TransactionType.EXPENSE).status_code == 502
    assert categories.list() == []


def test_list_falls_back_to_cache(services, fake_supabase):
    categories = services["category_service"]
    categories.add("Food", TransactionType.EXPENSE)
    fake_supabase.fail("categories")
    categories.invalidate()
    assert [c.name for c in categories.list()] == ["Food"]


def test_requires_login(services, session):
    session.clear()
    assert services["category_service"].add("Food", TransactionType.EXPENSE).status_code == 401
