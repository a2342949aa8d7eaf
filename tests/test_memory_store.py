import threading

import pytest

from collegeportal.storage.errors import ConstraintViolation
from collegeportal.storage.memory import MemoryStore
from collegeportal.storage.models import STATUS_INACTIVE


@pytest.fixture
def store():
    return MemoryStore()


def test_create_and_find(store):
    user = store.create_user("student", name="Asha", email=" Asha@Example.edu ", password_hash="h")
    assert user.email == "Asha@Example.edu"
    assert store.find_user_by_email("student", "asha@example.edu") is user
    assert store.find_user_by_email("faculty", "asha@example.edu") is None


def test_ids_are_per_category(store):
    s = store.create_user("student", name="S", email="s@example.edu", password_hash="h")
    f = store.create_user("faculty", name="F", email="f@example.edu", password_hash="h")
    assert s.id == 1
    assert f.id == 1


def test_duplicate_email_rejected(store):
    store.create_user("student", name="A", email="a@example.edu", password_hash="h")
    with pytest.raises(ConstraintViolation):
        store.create_user("student", name="B", email="A@EXAMPLE.EDU", password_hash="h")


def test_same_email_allowed_across_categories(store):
    store.create_user("student", name="A", email="a@example.edu", password_hash="h")
    faculty = store.create_user("faculty", name="A", email="a@example.edu", password_hash="h")
    assert store.find_user_by_email("faculty", "a@example.edu") is faculty


def test_set_status(store):
    user = store.create_user("faculty", name="F", email="f@example.edu", password_hash="h")
    store.set_user_status("faculty", user.id, STATUS_INACTIVE)
    assert not store.find_user_by_email("faculty", "f@example.edu").is_active
    assert store.set_user_status("faculty", 999, STATUS_INACTIVE) is None


def test_record_last_login(store):
    user = store.create_user("student", name="S", email="s@example.edu", password_hash="h")
    store.record_last_login("student", user.id)
    assert user.last_login is not None


def test_record_last_login_missing_user_is_ignored(store):
    store.record_last_login("student", 404)


def test_unknown_category(store):
    with pytest.raises(ValueError):
        store.find_user_by_email("admin", "x@example.edu")


def test_concurrent_creates_get_unique_ids(store):
    def worker(n):
        store.create_user("student", name=f"S{n}", email=f"s{n}@example.edu", password_hash="h")

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    ids = {store.find_user_by_email("student", f"s{n}@example.edu").id for n in range(20)}
    assert ids == set(range(1, 21))
