"""Unit tests for the deduplicated identity store.

Tests cover:
- Upsert creating and merging memberships keyed by normalized site URL
- Concurrent first inserts for one email
- Role replacement and membership removal
- Pruning memberships of disconnected sites
- Listing with search, role and site filters
"""

import threading
from collections.abc import Iterator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from meridian_core.domain.models import Base, DeduplicatedUser
from meridian_core.domain.services.identity_store import (
    IdentityFilter,
    IdentityStore,
    SiteMembership,
    normalize_roles,
)
from tests.factories import create_identity, membership


class TestNormalizeRoles:
    """Tests for role normalization."""

    def test_sorts_and_deduplicates(self):
        assert normalize_roles(["editor", "subscriber", "editor"]) == ["editor", "subscriber"]

    def test_non_list_becomes_empty(self):
        assert normalize_roles("editor") == []
        assert normalize_roles(None) == []

    def test_drops_blank_roles(self):
        assert normalize_roles(["", "  ", "author"]) == ["author"]


class TestUpsertMembership:
    """Tests for IdentityStore.upsert_membership."""

    def test_creates_identity_with_single_membership(self, db_session: Session):
        store = IdentityStore(db_session)

        record = store.upsert_membership(
            "ann@example.com",
            "Ann",
            "Lee",
            SiteMembership("Alpha", "https://alpha.example", 7, ["subscriber"]),
        )

        assert record.id is not None
        assert record.sites_json == [
            {
                "site_name": "Alpha",
                "site_url": "https://alpha.example/",
                "user_id": 7,
                "roles": ["subscriber"],
            }
        ]

    def test_second_site_adds_membership(self, db_session: Session):
        store = IdentityStore(db_session)
        store.upsert_membership(
            "ann@example.com", "Ann", "Lee", SiteMembership("Alpha", "https://alpha.example/", 7)
        )

        record = store.upsert_membership(
            "ann@example.com", "Ann", "Lee", SiteMembership("Beta", "https://beta.example/", 3)
        )

        assert [site["site_url"] for site in record.sites_json] == [
            "https://alpha.example/",
            "https://beta.example/",
        ]
        assert db_session.query(DeduplicatedUser).count() == 1

    def test_same_site_without_trailing_slash_replaces_in_place(self, db_session: Session):
        store = IdentityStore(db_session)
        store.upsert_membership(
            "ann@example.com",
            "Ann",
            "Lee",
            SiteMembership("Alpha", "https://alpha.example/", 7, ["subscriber"]),
        )

        record = store.upsert_membership(
            "ann@example.com",
            "Ann",
            "Lee",
            SiteMembership("Alpha Renamed", "https://alpha.example", 7, ["editor"]),
        )

        assert len(record.sites_json) == 1
        assert record.sites_json[0]["site_name"] == "Alpha Renamed"
        assert record.sites_json[0]["roles"] == ["editor"]

    def test_names_are_refreshed(self, db_session: Session):
        store = IdentityStore(db_session)
        store.upsert_membership(
            "ann@example.com", "Ann", "Lee", SiteMembership("Alpha", "https://alpha.example/", 7)
        )

        record = store.upsert_membership(
            "ann@example.com", "Anna", "Li", SiteMembership("Alpha", "https://alpha.example/", 7)
        )

        assert (record.first_name, record.last_name) == ("Anna", "Li")

    def test_reapplying_is_idempotent(self, db_session: Session):
        store = IdentityStore(db_session)
        item = SiteMembership("Alpha", "https://alpha.example/", 7, ["subscriber"])
        first = store.upsert_membership("ann@example.com", "Ann", "Lee", item)
        before = [dict(site) for site in first.sites_json]

        second = store.upsert_membership("ann@example.com", "Ann", "Lee", item)

        assert second.id == first.id
        assert second.sites_json == before

    def test_emails_are_compared_exactly(self, db_session: Session):
        store = IdentityStore(db_session)
        store.upsert_membership(
            "ann@example.com", "Ann", "Lee", SiteMembership("Alpha", "https://alpha.example/", 7)
        )
        store.upsert_membership(
            "Ann@Example.com", "Ann", "Lee", SiteMembership("Alpha", "https://alpha.example/", 8)
        )

        # Distinct identities unless the backing collation folds case
        assert store.get("ann@example.com") is not None
        assert store.get("Ann@Example.com") is not None

    def test_empty_email_is_rejected(self, db_session: Session):
        store = IdentityStore(db_session)

        with pytest.raises(ValueError):
            store.upsert_membership("", "", "", SiteMembership("Alpha", "https://alpha.example/"))

    def test_empty_site_url_is_rejected(self, db_session: Session):
        store = IdentityStore(db_session)

        with pytest.raises(ValueError):
            store.upsert_membership("ann@example.com", "", "", SiteMembership("Alpha", ""))


class TestConcurrentUpsert:
    """Two writers creating the same identity at the same time."""

    @pytest.fixture
    def file_session_factory(self, tmp_path) -> Iterator[sessionmaker[Session]]:
        # One connection per session, so uncommitted rows stay private
        engine = create_engine(
            f"sqlite:///{tmp_path / 'identities.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(engine)
        yield sessionmaker(bind=engine, autoflush=False)
        engine.dispose()

    def test_both_memberships_survive(self, file_session_factory):
        barrier = threading.Barrier(2)
        errors = []

        def upsert(site_name: str, site_url: str, user_id: int):
            try:
                barrier.wait(timeout=10)
                with file_session_factory() as session:
                    IdentityStore(session).upsert_membership(
                        "ann@example.com", "Ann", "Lee", SiteMembership(site_name, site_url, user_id)
                    )
                    session.commit()
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=upsert, args=("Alpha", "https://alpha.example/", 7)),
            threading.Thread(target=upsert, args=("Beta", "https://beta.example/", 3)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        with file_session_factory() as session:
            records = session.query(DeduplicatedUser).all()
            assert len(records) == 1
            assert sorted((s["site_name"], s["user_id"]) for s in records[0].sites_json) == [
                ("Alpha", 7),
                ("Beta", 3),
            ]

    def test_lost_insert_merges_into_existing_row(self, db_session: Session, monkeypatch):
        create_identity(db_session, sites=[membership("https://alpha.example/", "Alpha", 7)])
        store = IdentityStore(db_session)
        locate = store._get_for_update
        lookups = []

        def lagging_lookup(email):
            # The first lookup runs before the other writer's row is visible
            lookups.append(email)
            return None if len(lookups) == 1 else locate(email)

        monkeypatch.setattr(store, "_get_for_update", lagging_lookup)

        record = store.upsert_membership(
            "ann@example.com", "Ann", "Lee", SiteMembership("Beta", "https://beta.example/", 3)
        )

        assert len(lookups) == 2
        assert db_session.query(DeduplicatedUser).count() == 1
        assert [s["site_name"] for s in record.sites_json] == ["Alpha", "Beta"]

    def test_row_missing_after_lost_insert_raises(self, db_session: Session, monkeypatch):
        create_identity(db_session)
        store = IdentityStore(db_session)
        monkeypatch.setattr(store, "_get_for_update", lambda email: None)

        with pytest.raises(RuntimeError, match="vanished"):
            store.upsert_membership(
                "ann@example.com", "Ann", "Lee", SiteMembership("Beta", "https://beta.example/", 3)
            )


class TestUpdateRole:
    """Tests for IdentityStore.update_role."""

    def test_replaces_roles_of_one_membership(self, db_session: Session):
        create_identity(
            db_session,
            sites=[
                membership("https://alpha.example/", "Alpha", 7, ["subscriber"]),
                membership("https://beta.example/", "Beta", 3, ["subscriber"]),
            ],
        )
        store = IdentityStore(db_session)

        assert store.update_role("ann@example.com", "https://beta.example", ["editor", "author"])

        record = store.get("ann@example.com")
        assert record.sites_json[0]["roles"] == ["subscriber"]
        assert record.sites_json[1]["roles"] == ["author", "editor"]

    def test_unknown_identity_returns_false(self, db_session: Session):
        assert IdentityStore(db_session).update_role("nobody@example.com", "https://a/", []) is False

    def test_unknown_membership_returns_false(self, db_session: Session):
        create_identity(db_session, sites=[membership("https://alpha.example/")])

        store = IdentityStore(db_session)

        assert store.update_role("ann@example.com", "https://gamma.example/", ["editor"]) is False


class TestRemoveMembership:
    """Tests for IdentityStore.remove_membership."""

    def test_removes_one_membership(self, db_session: Session):
        create_identity(
            db_session,
            sites=[
                membership("https://alpha.example/", "Alpha", 7),
                membership("https://beta.example/", "Beta", 3),
            ],
        )
        store = IdentityStore(db_session)

        assert store.remove_membership("ann@example.com", "https://alpha.example")

        record = store.get("ann@example.com")
        assert [site["site_url"] for site in record.sites_json] == ["https://beta.example/"]

    def test_removing_last_membership_deletes_identity(self, db_session: Session):
        create_identity(db_session, sites=[membership("https://alpha.example/")])
        store = IdentityStore(db_session)

        assert store.remove_membership("ann@example.com", "https://alpha.example/")

        assert store.get("ann@example.com") is None

    def test_unknown_membership_returns_false(self, db_session: Session):
        create_identity(db_session, sites=[membership("https://alpha.example/")])

        assert IdentityStore(db_session).remove_membership(
            "ann@example.com", "https://beta.example/"
        ) is False


class TestPruneDisconnectedSites:
    """Tests for IdentityStore.prune_disconnected_sites."""

    def test_prunes_in_batches(self, db_session: Session):
        for i in range(5):
            create_identity(
                db_session,
                email=f"user{i}@example.com",
                sites=[
                    membership("https://alpha.example/", "Alpha", i),
                    membership("https://gone.example/", "Gone", i),
                ],
            )
        create_identity(
            db_session,
            email="orphan@example.com",
            sites=[membership("https://gone.example/", "Gone", 99)],
        )
        store = IdentityStore(db_session)

        stats = store.prune_disconnected_sites(["https://alpha.example"], batch_size=2)

        assert stats == {"examined": 6, "updated": 5, "deleted": 1, "memberships_removed": 6}
        assert store.get("orphan@example.com") is None
        assert store.get("user0@example.com").sites_json == [
            membership("https://alpha.example/", "Alpha", 0)
        ]

    def test_nothing_to_prune(self, db_session: Session):
        create_identity(db_session, sites=[membership("https://alpha.example/")])

        stats = IdentityStore(db_session).prune_disconnected_sites(["https://alpha.example/"])

        assert stats["examined"] == 1
        assert stats["memberships_removed"] == 0


class TestQuery:
    """Tests for IdentityStore.query."""

    @pytest.fixture
    def populated(self, db_session: Session):
        create_identity(
            db_session,
            email="ann@example.com",
            first_name="Ann",
            last_name="Lee",
            sites=[membership("https://alpha.example/", "Alpha", 1, ["editor"])],
        )
        create_identity(
            db_session,
            email="bob@example.com",
            first_name="Bob",
            last_name="Stone",
            sites=[membership("https://beta.example/", "Beta", 2, ["subscriber"])],
        )
        create_identity(
            db_session,
            email="cyd@example.com",
            first_name="Cyd",
            last_name="Lee",
            sites=[
                membership("https://alpha.example/", "Alpha", 3, ["subscriber"]),
                membership("https://beta.example/", "Beta", 4, ["editor"]),
            ],
        )
        return IdentityStore(db_session)

    def test_returns_newest_first_with_total(self, populated):
        items, total = populated.query(page=1, page_size=2)

        assert total == 3
        assert [item.email for item in items] == ["cyd@example.com", "bob@example.com"]

    def test_search_matches_full_name(self, populated):
        items, total = populated.query(IdentityFilter(search_text="Ann Lee"))

        assert total == 1
        assert items[0].email == "ann@example.com"

    def test_search_matches_last_name(self, populated):
        _, total = populated.query(IdentityFilter(search_text="lee"))

        assert total == 2

    def test_role_filter(self, populated):
        items, total = populated.query(IdentityFilter(role="editor"))

        assert total == 2
        assert {item.email for item in items} == {"ann@example.com", "cyd@example.com"}

    def test_site_filter_by_name_or_url(self, populated):
        _, by_name = populated.query(IdentityFilter(site="beta"))
        _, by_url = populated.query(IdentityFilter(site="alpha.example"))

        assert by_name == 2
        assert by_url == 2

    def test_second_page(self, populated):
        items, total = populated.query(page=2, page_size=2)

        assert total == 3
        assert [item.email for item in items] == ["ann@example.com"]
