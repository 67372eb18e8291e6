import pytest
from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError

from errors import InsufficientRole, NotFound, NotOwner, ValidationError
from schemas import BookUpdatePayload
from tests.conftest import book_payload


def test_create_sets_owner_and_defaults(services, librarian):
    book = services.books.create(librarian, book_payload())
    assert book["owner_id"] == librarian.id
    assert book["status"] == "draft"
    assert book["rating"] == 0
    assert book["review_count"] == 0


def test_user_cannot_create_book(services, user):
    with pytest.raises(InsufficientRole):
        services.books.create(user, book_payload())


def test_cover_data_is_uploaded(services, librarian, image_host):
    book = services.books.create(librarian, book_payload(cover_image_ref=None,
                                                         cover_image_data="data:image/png;base64,AAAA"))
    assert book["cover_image_ref"] == "https://img.example.com/1.png"
    assert image_host.uploads == ["data:image/png;base64,AAAA"]


def test_payload_validation():
    with pytest.raises(PydanticValidationError):
        book_payload(price=-1)
    with pytest.raises(PydanticValidationError):
        book_payload(isbn="12345")
    with pytest.raises(PydanticValidationError):
        book_payload(category="Cookbooks")
    with pytest.raises(PydanticValidationError):
        book_payload(cover_image_ref=None)


def test_only_owner_librarian_or_admin_updates(services, book, other_librarian, admin, user):
    with pytest.raises(NotOwner):
        services.books.update(other_librarian, book["_id"], BookUpdatePayload(price=9.99))
    with pytest.raises(InsufficientRole):
        services.books.update(user, book["_id"], BookUpdatePayload(price=9.99))
    assert services.books.update(admin, book["_id"], BookUpdatePayload(price=9.99))["price"] == 9.99


def test_update_cannot_touch_derived_fields(services, librarian, book):
    with pytest.raises(ValidationError):
        services.books.update(librarian, book["_id"], BookUpdatePayload())
    # rating is not part of the update payload at all
    updated = services.books.update(librarian, book["_id"], BookUpdatePayload(**{"title": "New", "rating": 5}))
    assert updated["rating"] == 0


def test_delete_is_admin_only(services, db, librarian, admin, book):
    with pytest.raises(InsufficientRole):
        services.books.delete(librarian, book["_id"])
    services.books.delete(admin, book["_id"])
    assert db["book"].find_one({"_id": ObjectId(book["_id"])}) is None
    with pytest.raises(NotFound):
        services.books.get(admin, book["_id"])


def test_unpublished_books_are_hidden(services, make_book, librarian, other_librarian, user, admin):
    draft = make_book(status="draft", title="Secret Draft")
    for caller in (None, user, other_librarian):
        with pytest.raises(NotFound):
            services.books.get(caller, draft["_id"])
    assert services.books.get(librarian, draft["_id"])["title"] == "Secret Draft"
    assert services.books.get(admin, draft["_id"])["title"] == "Secret Draft"


def test_list_visibility(services, make_book, librarian, other_librarian, user, admin):
    make_book(title="Published One")
    make_book(status="draft", title="Mine Draft")
    make_book(owner=other_librarian, status="unpublished", title="Theirs Hidden")
    titles = lambda books: sorted(b["title"] for b in books)  # noqa: E731
    assert titles(services.books.list(None)) == ["Published One"]
    assert titles(services.books.list(user)) == ["Published One"]
    assert titles(services.books.list(librarian)) == ["Mine Draft", "Published One"]
    assert titles(services.books.list(admin)) == ["Mine Draft", "Published One", "Theirs Hidden"]
    assert titles(services.books.list(admin, status="unpublished")) == ["Theirs Hidden"]


def test_list_search_category_and_sort(services, make_book):
    make_book(title="Dune", author="Frank Herbert", price=12.5)
    make_book(title="Gone Girl", author="Gillian Flynn", category="Thriller", price=9.0)
    make_book(title="Emma", author="Jane Austen", category="Romance", price=20.0)

    assert [b["title"] for b in services.books.list(search="HERB")] == ["Dune"]
    assert [b["title"] for b in services.books.list(search="gi")] == ["Gone Girl"]
    assert [b["title"] for b in services.books.list(category="Thriller")] == ["Gone Girl"]
    assert len(services.books.list(category="All")) == 3
    assert [b["title"] for b in services.books.list(sort="title")] == ["Dune", "Emma", "Gone Girl"]
    assert [b["price"] for b in services.books.list(sort="price-asc")] == [9.0, 12.5, 20.0]
    assert [b["price"] for b in services.books.list(sort="price-desc")] == [20.0, 12.5, 9.0]
    assert [b["title"] for b in services.books.list()] == ["Emma", "Gone Girl", "Dune"]
    assert [b["title"] for b in services.books.list(sort="oldest")] == ["Dune", "Gone Girl", "Emma"]
    with pytest.raises(ValidationError):
        services.books.list(sort="rating")


def test_search_is_literal(services, make_book):
    make_book(title="C++ Primer")
    make_book(title="Cats")
    assert [b["title"] for b in services.books.list(search="C++")] == ["C++ Primer"]


def test_list_attaches_librarian(services, book, librarian):
    listed = services.books.list(None)[0]
    assert listed["librarian"]["name"] == librarian.name
    assert "password_hash" not in listed["librarian"]


def test_set_status_by_owner(services, make_book, librarian, other_librarian):
    draft = make_book(status="draft")
    with pytest.raises(NotOwner):
        services.books.set_status(other_librarian, draft["_id"], "published")
    assert services.books.set_status(librarian, draft["_id"], "published")["status"] == "published"


def test_list_by_librarian(services, make_book, librarian, user):
    make_book(title="Shown")
    make_book(status="draft", title="Hidden")
    assert [b["title"] for b in services.books.list_by_librarian(user, librarian.id)] == ["Shown"]
    assert len(services.books.list_by_librarian(librarian, librarian.id)) == 2
