import pytest
from bson import ObjectId

from errors import DuplicateError, NotFound, NotOwner


def test_add_and_list(services, user, book):
    entry = services.wishlist.add(user, book["_id"])
    assert entry["book"]["title"] == book["title"]
    items = services.wishlist.list(user, user.id)
    assert [i["book_id"] for i in items] == [book["_id"]]


def test_duplicate_is_rejected(services, db, user, book):
    services.wishlist.add(user, book["_id"])
    with pytest.raises(DuplicateError):
        services.wishlist.add(user, book["_id"])
    assert db["wishlist"].count_documents({"user_id": user.id}) == 1


def test_unknown_book(services, user):
    with pytest.raises(NotFound):
        services.wishlist.add(user, str(ObjectId()))


def test_list_skips_deleted_books(services, user, admin, make_book):
    kept = make_book(title="Kept")
    gone = make_book(title="Gone")
    services.wishlist.add(user, kept["_id"])
    services.wishlist.add(user, gone["_id"])
    services.books.delete(admin, gone["_id"])
    assert [i["book"]["title"] for i in services.wishlist.list(user, user.id)] == ["Kept"]


def test_only_owner_reads_or_removes(services, user, other_user, admin, book):
    entry = services.wishlist.add(user, book["_id"])
    with pytest.raises(NotOwner):
        services.wishlist.list(other_user, user.id)
    with pytest.raises(NotOwner):
        services.wishlist.remove(other_user, entry["_id"])
    assert len(services.wishlist.list(admin, user.id)) == 1
    services.wishlist.remove(user, entry["_id"])
    assert services.wishlist.list(user, user.id) == []


def test_unique_index_backs_the_precheck(services, db, user, book, monkeypatch):
    services.wishlist.add(user, book["_id"])
    monkeypatch.setattr(services.wishlist, "_has_entry", lambda user_id, book_id: False)
    with pytest.raises(DuplicateError):
        services.wishlist.add(user, book["_id"])
    assert db["wishlist"].count_documents({"user_id": user.id}) == 1
