import logging
import threading
import time

import pytest
from pymongo.errors import AutoReconnect

from aggregates import AggregateEngine, KeyedLocks, round_half_up
from errors import AggregateRecomputeError, Conflict, Forbidden, NotFound
from schemas import Account, FinancialInstitution


def make_user(services, n: int, role: str = "user"):
    return services.accounts.insert(
        Account(
            name=f"User {n}",
            email=f"user{n}@example.com",
            password_hash="$2b$04$notreal",
            role=role,
            isApproved=True,
        )
    )


@pytest.fixture
def institution_id(services) -> str:
    inst = services.content.create_institution(
        FinancialInstitution(
            name="Fuji Securities", type="securities", description="Broker", location="Osaka"
        )
    )
    return inst["id"]


@pytest.fixture
def thread_id(services) -> str:
    author = make_user(services, 100)
    category = services.content.create_category("Mortgages", "Home loans")
    return services.content.create_thread(author, category["id"], "Fixed or variable?")["id"]


def test_institution_without_reviews(services, institution_id):
    assert services.aggregates.recompute_institution_rating(institution_id) == {
        "avgRating": 0,
        "reviewCount": 0,
    }
    inst = services.content.get_institution(institution_id)
    assert inst["avgRating"] == 0
    assert inst["reviewCount"] == 0


def test_rating_aggregate_follows_reviews(services, institution_id):
    reviews = {}
    for n, rating in enumerate([4, 5, 3]):
        result = services.content.create_review(
            make_user(services, n), institution_id, rating, "Title", "Body"
        )
        reviews[rating] = (result.data["id"], n)
    assert result.aggregate == {"avgRating": 4.0, "reviewCount": 3}

    review_id, n = reviews[3]
    author = services.accounts.find_by_email(f"user{n}@example.com")
    result = services.content.delete_review(author, review_id)
    assert result.aggregate == {"avgRating": 4.5, "reviewCount": 2}
    assert result.warnings == []

    inst = services.content.get_institution(institution_id)
    assert (inst["avgRating"], inst["reviewCount"]) == (4.5, 2)


def test_average_is_rounded_to_one_decimal(services, institution_id):
    for n, rating in enumerate([5, 4, 4]):
        result = services.content.create_review(
            make_user(services, n), institution_id, rating, "Title", "Body"
        )
    assert result.aggregate["avgRating"] == 4.3


def test_half_way_averages_round_up(services, institution_id):
    for n, rating in enumerate([4, 5, 4, 4]):
        result = services.content.create_review(
            make_user(services, n), institution_id, rating, "Title", "Body"
        )
    # mean 4.25
    assert result.aggregate["avgRating"] == 4.3
    assert services.content.get_institution(institution_id)["avgRating"] == 4.3


@pytest.mark.parametrize(
    "mean, expected",
    [(4.25, 4.3), (3.75, 3.8), (2.05, 2.1), (4.24, 4.2), (1.0, 1.0), (4.666666666666667, 4.7)],
)
def test_round_half_up(mean, expected):
    assert round_half_up(mean) == expected


def test_deleting_last_review_resets_aggregate(services, institution_id):
    author = make_user(services, 1)
    review = services.content.create_review(author, institution_id, 2, "Meh", "Slow service")
    result = services.content.delete_review(author, review.data["id"])
    assert result.aggregate == {"avgRating": 0, "reviewCount": 0}


def test_one_review_per_user_per_institution(services, db, institution_id):
    author = make_user(services, 1)
    services.content.create_review(author, institution_id, 5, "Great", "Friendly staff")
    with pytest.raises(Conflict) as exc:
        services.content.create_review(author, institution_id, 1, "Changed", "my mind")
    assert exc.value.kind == "DuplicateReview"
    assert db["review"].count_documents({}) == 1
    assert services.content.get_institution(institution_id)["reviewCount"] == 1


def test_review_for_unknown_institution(services):
    with pytest.raises(NotFound):
        services.content.create_review(make_user(services, 1), "000000000000000000000000", 3, "t", "b")


def test_only_author_or_admin_deletes_review(services, institution_id):
    author = make_user(services, 1)
    stranger = make_user(services, 2)
    admin = make_user(services, 3, role="admin")
    review = services.content.create_review(author, institution_id, 4, "Good", "Fine")
    with pytest.raises(Forbidden):
        services.content.delete_review(stranger, review.data["id"])
    result = services.content.delete_review(admin, review.data["id"])
    assert result.aggregate["reviewCount"] == 0


def test_comment_count(services, db, thread_id):
    comments = [
        services.content.create_comment(make_user(services, n), thread_id, f"comment {n}")
        for n in range(3)
    ]
    assert comments[-1].aggregate == {"commentCount": 3}
    assert services.content.get_thread(thread_id)["commentCount"] == 3

    first = comments[0].data
    author = services.accounts.find_by_email("user0@example.com")
    result = services.content.delete_comment(author, first["id"])
    assert result.aggregate == {"commentCount": 2}
    assert services.content.get_thread(thread_id)["commentCount"] == db["comment"].count_documents(
        {"thread_id": thread_id}
    )


def test_helpful_toggle_and_uniqueness(services, db, thread_id):
    author = make_user(services, 1)
    voter = make_user(services, 2)
    comment_id = services.content.create_comment(author, thread_id, "Use a fixed rate").data["id"]

    added = services.content.toggle_helpful(voter, comment_id)
    assert added.created is True
    assert added.aggregate == {"helpfulCount": 1}

    with pytest.raises(Conflict) as exc:
        services.content.add_helpful(str(voter["_id"]), comment_id)
    assert exc.value.kind == "DuplicateVote"
    assert db["helpful"].count_documents({"comment_id": comment_id}) == 1

    removed = services.content.toggle_helpful(voter, comment_id)
    assert removed.created is False
    assert removed.aggregate == {"helpfulCount": 0}
    assert services.content.get_comment(comment_id)["helpfulCount"] == 0


def test_deleting_comment_drops_its_votes(services, db, thread_id):
    author = make_user(services, 1)
    comment_id = services.content.create_comment(author, thread_id, "hello").data["id"]
    services.content.toggle_helpful(make_user(services, 2), comment_id)
    services.content.delete_comment(author, comment_id)
    assert db["helpful"].count_documents({"comment_id": comment_id}) == 0


class BrokenCollection:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise AutoReconnect("connection lost")
        return fail


class BrokenDatabase:
    def __getitem__(self, name):
        return BrokenCollection()


def test_engine_reports_store_failure():
    engine = AggregateEngine(BrokenDatabase(), timeout_seconds=1)
    with pytest.raises(AggregateRecomputeError) as exc:
        engine.recompute_thread_comment_count("000000000000000000000000")
    assert exc.value.kind == "AggregateStale"
    assert exc.value.target == "thread"
    assert len(engine.locks) == 0


def test_recompute_failure_is_logged_once(services, db, institution_id, monkeypatch, caplog):
    monkeypatch.setattr(services.aggregates, "db", BrokenDatabase())
    with caplog.at_level(logging.ERROR):
        result = services.content.create_review(
            make_user(services, 1), institution_id, 5, "Top", "Best"
        )
    assert [w.kind for w in result.warnings] == ["AggregateStale"]
    assert db["review"].count_documents({}) == 1
    errors = [r for r in caplog.records if r.levelno >= logging.ERROR]
    assert len(errors) == 1
    assert "institution" in errors[0].getMessage()


def test_failed_recompute_keeps_the_review(services, db, institution_id, monkeypatch):
    def fail(target_id):
        raise AggregateRecomputeError("Could not refresh", "institution", target_id)

    monkeypatch.setattr(services.aggregates, "recompute_institution_rating", fail)
    result = services.content.create_review(make_user(services, 1), institution_id, 5, "Top", "Best")

    assert db["review"].count_documents({}) == 1
    assert result.aggregate is None
    assert [w.kind for w in result.warnings] == ["AggregateStale"]
    # counters stay stale until the next successful recompute
    assert services.content.get_institution(institution_id)["reviewCount"] == 0


def test_keyed_locks_serialize_same_key():
    locks = KeyedLocks()
    active = []
    overlaps = []

    def worker():
        with locks.hold("thread:1"):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.01)
            active.pop()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert overlaps == []
    assert len(locks) == 0


def test_keyed_locks_do_not_block_other_keys():
    locks = KeyedLocks()
    with locks.hold("a"):
        acquired = threading.Event()

        def other():
            with locks.hold("b"):
                acquired.set()

        t = threading.Thread(target=other)
        t.start()
        assert acquired.wait(timeout=2)
        t.join()
