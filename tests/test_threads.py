"""
Tests for the GET /api/dashboard/threads endpoint.

Tests cover:
- System account exclusion and thread shape
- Search, filters and sorts
- Pagination and total consistency
- Invalid enum values
"""

import pytest

FILTERS = ["all", "active", "new_today", "with_pets", "high_activity"]


@pytest.fixture
def threads(factory):
    """
    asha: 3 user + 2 bot messages, latest 30 minutes ago, one pet
    ravi: 12 messages three days ago, the last one long
    meera: registered today, no messages
    system: excluded by phone pattern
    """
    asha = factory.user(name="Asha", parentemail="asha@example.com", created_at=factory.local(days_ago=40))
    factory.messages(asha, 3, factory.ago(hours=2))
    factory.message(asha, factory.ago(hours=1), sender="bot", content="How is Bruno?")
    factory.message(asha, factory.ago(minutes=30), sender="bot", content="bye")
    factory.pet(asha, name="Bruno")

    ravi = factory.user(name="Ravi", created_at=factory.local(days_ago=20))
    factory.messages(ravi, 11, factory.local(days_ago=3, hour=10))
    factory.message(ravi, factory.local(days_ago=3, hour=11), content="x" * 200)

    meera = factory.user(name="Meera", created_at=factory.local(days_ago=0, hour=0, minute=1))

    system = factory.user(name="System", phone="whatsapp_bot1")
    factory.message(system, factory.ago(minutes=5))

    return {"asha": asha, "ravi": ravi, "meera": meera, "system": system}


def _names(response):
    return [t["user_name"] for t in response.json()["data"]["threads"]]


class TestThreadListing:
    """Basic listing behaviour."""

    def test_excludes_system_accounts(self, client, threads):
        response = client.get("/api/dashboard/threads")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["pagination"]["total"] == 3
        assert "System" not in _names(response)
        assert data["filters"] == {"search": "", "filter": "all", "sort": "recent"}

    def test_thread_shape(self, client, threads):
        data = client.get("/api/dashboard/threads").json()["data"]
        asha = next(t for t in data["threads"] if t["user_name"] == "Asha")

        assert asha["message_count"] == 5
        assert asha["user_messages"] == 3
        assert asha["bot_messages"] == 2
        assert asha["last_message"] == "bye"
        assert asha["last_sender"] == "bot"
        assert asha["user_email"] == "asha@example.com"
        assert asha["pet_info"] == {"name": "Bruno", "type": "dog", "breed": "Indie", "age": "3", "gender": None}
        assert asha["is_recent_activity"] is True
        assert asha["is_new_today"] is False
        assert asha["activity_score"] == 5 + 10 + 3

    def test_long_last_message_truncated(self, client, threads):
        data = client.get("/api/dashboard/threads").json()["data"]
        ravi = next(t for t in data["threads"] if t["user_name"] == "Ravi")

        assert ravi["last_message"] == "x" * 150 + "..."
        assert ravi["is_recent_activity"] is False

    def test_user_without_messages(self, client, threads):
        data = client.get("/api/dashboard/threads").json()["data"]
        meera = next(t for t in data["threads"] if t["user_name"] == "Meera")

        assert meera["last_message"] == "No messages yet"
        assert meera["last_sender"] == "system"
        assert meera["last_activity"] == meera["user_created"]
        assert meera["message_count"] == 0
        assert meera["pet_info"] is None
        assert meera["is_new_today"] is True

    def test_name_falls_back_to_phone(self, client, factory):
        factory.user(name=None, phone="+919811111111")

        data = client.get("/api/dashboard/threads").json()["data"]

        assert data["threads"][0]["user_name"] == "+919811111111"

    def test_latest_message_tie_goes_to_higher_id(self, client, factory):
        user = factory.user()
        same_time = factory.local(days_ago=1)
        factory.message(user, same_time, content="first")
        factory.message(user, same_time, content="second")

        data = client.get("/api/dashboard/threads").json()["data"]

        assert data["threads"][0]["last_message"] == "second"

    def test_multiple_pets_do_not_duplicate_threads(self, client, factory):
        user = factory.user()
        factory.pet(user, name="Bruno")
        factory.pet(user, name="Coco")

        data = client.get("/api/dashboard/threads").json()["data"]

        assert data["pagination"]["total"] == 1
        assert len(data["threads"]) == 1


class TestThreadSearch:
    def test_search_pet_name_case_insensitive(self, client, threads):
        assert _names(client.get("/api/dashboard/threads?search=bruno")) == ["Asha"]

    def test_search_name(self, client, threads):
        assert _names(client.get("/api/dashboard/threads?search=RAVI")) == ["Ravi"]

    def test_search_email(self, client, threads):
        assert _names(client.get("/api/dashboard/threads?search=example.com")) == ["Asha"]

    def test_wildcards_are_literal(self, client, threads):
        response = client.get("/api/dashboard/threads", params={"search": "%"})

        assert response.json()["data"]["pagination"]["total"] == 0


class TestThreadFilters:
    def test_with_pets(self, client, threads):
        assert _names(client.get("/api/dashboard/threads?filter=with_pets")) == ["Asha"]

    def test_high_activity(self, client, threads):
        assert _names(client.get("/api/dashboard/threads?filter=high_activity")) == ["Ravi"]

    def test_new_today(self, client, threads):
        assert _names(client.get("/api/dashboard/threads?filter=new_today")) == ["Meera"]

    def test_active(self, client, threads):
        assert _names(client.get("/api/dashboard/threads?filter=active")) == ["Asha"]

    @pytest.mark.parametrize("search", ["", "a", "bru", "asha@", "zzz"])
    @pytest.mark.parametrize("thread_filter", FILTERS)
    def test_total_matches_unpaginated_rows(self, client, threads, thread_filter, search):
        url = f"/api/dashboard/threads?filter={thread_filter}&search={search}&limit=200"
        data = client.get(url).json()["data"]

        assert data["pagination"]["total"] == len(data["threads"])

    def test_owner_of_several_pets_counted_once(self, client, factory, threads):
        factory.pet(threads["asha"], name="Brutus", created_at=factory.local(days_ago=60))

        data = client.get("/api/dashboard/threads?filter=with_pets&search=bru").json()["data"]

        assert [t["user_name"] for t in data["threads"]] == ["Asha"]
        assert data["pagination"]["total"] == 1

    def test_invalid_filter_rejected(self, client):
        response = client.get("/api/dashboard/threads?filter=everyone")

        assert response.status_code == 400
        assert response.json()["success"] is False


class TestThreadSorting:
    def test_sort_by_messages(self, client, threads):
        assert _names(client.get("/api/dashboard/threads?sort=messages")) == ["Ravi", "Asha", "Meera"]

    def test_sort_alphabetical(self, client, threads):
        assert _names(client.get("/api/dashboard/threads?sort=alphabetical")) == ["Asha", "Meera", "Ravi"]

    def test_sort_created(self, client, threads):
        assert _names(client.get("/api/dashboard/threads?sort=created")) == ["Meera", "Ravi", "Asha"]

    def test_sort_recent_puts_old_activity_last(self, client, threads):
        assert _names(client.get("/api/dashboard/threads?sort=recent"))[-1] == "Ravi"

    def test_invalid_sort_rejected(self, client):
        assert client.get("/api/dashboard/threads?sort=random").status_code == 400


class TestThreadPagination:
    def test_first_page(self, client, threads):
        data = client.get("/api/dashboard/threads?sort=alphabetical&limit=2").json()["data"]

        assert [t["user_name"] for t in data["threads"]] == ["Asha", "Meera"]
        assert data["pagination"] == {"total": 3, "offset": 0, "limit": 2, "has_more": True}

    def test_last_page(self, client, threads):
        data = client.get("/api/dashboard/threads?sort=alphabetical&limit=2&offset=2").json()["data"]

        assert [t["user_name"] for t in data["threads"]] == ["Ravi"]
        assert data["pagination"]["has_more"] is False

    def test_offset_past_end(self, client, threads):
        data = client.get("/api/dashboard/threads?offset=10").json()["data"]

        assert data["threads"] == []
        assert data["pagination"]["total"] == 3

    def test_limit_must_be_positive(self, client):
        assert client.get("/api/dashboard/threads?limit=0").status_code == 400
