"""
HTTP-level tests for auth, startups, transactions, updates, uploads and admin.

Run with: pytest tests/test_api.py -v
"""

import pytest
from pymongo.errors import DuplicateKeyError

import main
from config import settings
from database import create_document, get_db


@pytest.fixture
def founder(register):
    return register("founder", "startup")


@pytest.fixture
def backer(register):
    return register("backer", "investor")


@pytest.fixture
def campaign(client, founder):
    _, headers = founder
    res = client.post("/api/startups", headers=headers, json={
        "name": "Acme Robotics",
        "description": "Warehouse robots",
        "pitch": "Robots that restock shelves overnight",
        "stage": "seed",
        "funding_goal": 10000,
    })
    assert res.status_code == 201, res.text
    return res.json()


def invest(client, headers, startup_id, amount, method="wallet-transfer", reference="0xabc"):
    return client.post("/api/transactions", headers=headers, json={
        "startup_id": startup_id,
        "amount": amount,
        "method": method,
        "reference": reference,
    })


def raised(client, startup_id):
    return client.get(f"/api/startups/{startup_id}").json()["funds_raised"]


# =============================================================================
# Auth & user settings
# =============================================================================

class TestAuth:

    def test_register_and_login(self, client, register):
        user, headers = register("alice", "investor")
        assert user["role"] == "investor"
        assert "password_hash" not in user

        res = client.post("/api/login", json={"email": "alice@example.com", "password": "secret123"})
        assert res.status_code == 200
        assert res.json()["user"]["id"] == user["id"]

        me = client.get("/api/user", headers=headers)
        assert me.json()["username"] == "alice"

    def test_duplicate_email(self, client, register):
        register("alice", "investor")
        res = client.post("/api/register", json={
            "username": "alice2", "email": "ALICE@example.com", "password": "secret123", "role": "startup",
        })
        assert res.status_code == 400

    def test_admin_role_not_self_assignable(self, client):
        res = client.post("/api/register", json={
            "username": "mallory", "email": "m@example.com", "password": "secret123", "role": "admin",
        })
        assert res.status_code == 422

    def test_wrong_password(self, client, register):
        register("alice", "investor")
        res = client.post("/api/login", json={"email": "alice@example.com", "password": "wrong-pass"})
        assert res.status_code == 400

    def test_missing_and_bad_token(self, client):
        assert client.get("/api/user").status_code == 401
        assert client.get("/api/user", headers={"Authorization": "Bearer junk"}).status_code == 401

    def test_wallet_connect_propagates_to_startup(self, client, founder, campaign):
        _, headers = founder
        address = "0x" + "a1" * 20
        res = client.post("/api/wallet-connect", headers=headers, json={"wallet_address": address})
        assert res.status_code == 200
        assert res.json()["wallet_address"] == address
        assert client.get(f"/api/startups/{campaign['id']}").json()["wallet_address"] == address

    def test_wallet_connect_rejects_short_address(self, client, backer):
        _, headers = backer
        res = client.post("/api/wallet-connect", headers=headers, json={"wallet_address": "0x1234"})
        assert res.status_code == 422

    def test_upi_connect(self, client, founder, campaign):
        _, headers = founder
        res = client.post("/api/upi-connect", headers=headers, json={"upi_id": "acme@okbank"})
        assert res.status_code == 200
        assert client.get(f"/api/startups/{campaign['id']}").json()["upi_id"] == "acme@okbank"

    def test_profile_update_checks_uniqueness(self, client, register):
        register("alice", "investor")
        _, headers = register("bob", "investor")
        assert client.patch("/api/user/profile", headers=headers, json={"username": "alice"}).status_code == 400
        res = client.patch("/api/user/profile", headers=headers, json={"username": "bobby"})
        assert res.json()["username"] == "bobby"

    def test_registration_race_on_username(self, client, db, monkeypatch):
        real_create = main.create_document

        def racing_create(database, name, data):
            # the other request inserts the same username after our pre-check
            real_create(database, name, dict(data, email="first@example.com"))
            return real_create(database, name, data)

        monkeypatch.setattr(main, "create_document", racing_create)
        res = client.post("/api/register", json={
            "username": "alice", "email": "alice@example.com", "password": "secret123", "role": "investor",
        })

        assert res.status_code == 400
        assert res.json()["detail"] == "Username already taken"
        assert db["user"].count_documents({"username": "alice"}) == 1

    def test_profile_rename_race(self, client, db, register):
        _, headers = register("bob", "investor")

        class RacingUsers:
            def __init__(self, coll):
                self.coll = coll

            def __getattr__(self, name):
                return getattr(self.coll, name)

            def update_one(self, *args, **kwargs):
                create_document(db, "user", {"username": "carol", "email": "carol@example.com", "role": "investor"})
                raise DuplicateKeyError("E11000 duplicate key error collection: user index: username_1")

        class RacingDb:
            def __getitem__(self, name):
                return RacingUsers(db[name]) if name == "user" else db[name]

        main.app.dependency_overrides[get_db] = lambda: RacingDb()
        res = client.patch("/api/user/profile", headers=headers, json={"username": "carol"})

        assert res.status_code == 400
        assert res.json()["detail"] == "Username already taken"


# =============================================================================
# Startups
# =============================================================================

class TestStartups:

    def test_create_and_fetch(self, client, founder, campaign):
        _, headers = founder
        assert campaign["funds_raised"] == 0
        assert campaign["funding_goal"] == 10000.0
        assert "settling_transactions" not in campaign

        assert client.get("/api/startups/user/me", headers=headers).json()["id"] == campaign["id"]
        assert [s["id"] for s in client.get("/api/startups").json()] == [campaign["id"]]
        assert client.get("/api/startups?stage=seed").json()[0]["name"] == "Acme Robotics"
        assert client.get("/api/startups?stage=series-a").json() == []

    def test_one_profile_per_owner(self, client, founder, campaign):
        _, headers = founder
        res = client.post("/api/startups", headers=headers, json={
            "name": "Again", "description": "d", "pitch": "p", "stage": "seed", "funding_goal": 1,
        })
        assert res.status_code == 400

    def test_second_profile_race(self, client, db, founder, monkeypatch):
        _, headers = founder
        real_create = main.create_document

        def racing_create(database, name, data):
            real_create(database, name, dict(data, name="Twin"))
            return real_create(database, name, data)

        monkeypatch.setattr(main, "create_document", racing_create)
        res = client.post("/api/startups", headers=headers, json={
            "name": "Acme", "description": "d", "pitch": "p", "stage": "seed", "funding_goal": 1,
        })

        assert res.status_code == 400
        assert res.json()["detail"] == "You already have a startup profile"
        assert db["startup"].count_documents({}) == 1

    def test_oversized_funding_goal(self, client, founder):
        res = client.post("/api/startups", headers=founder[1], json={
            "name": "Acme", "description": "d", "pitch": "p", "stage": "seed", "funding_goal": 1e30,
        })
        assert res.status_code == 422

    def test_investor_cannot_create(self, client, backer):
        _, headers = backer
        res = client.post("/api/startups", headers=headers, json={
            "name": "Nope", "description": "d", "pitch": "p", "stage": "seed", "funding_goal": 1,
        })
        assert res.status_code == 403

    def test_owner_edits_but_cannot_touch_funds(self, client, founder, campaign):
        _, headers = founder
        res = client.patch(f"/api/startups/{campaign['id']}", headers=headers, json={
            "pitch": "New pitch", "stage": "series-a", "funding_goal": 20000, "funds_raised": 999999,
        })
        assert res.status_code == 200
        body = res.json()
        assert body["pitch"] == "New pitch"
        assert body["stage"] == "series-a"
        assert body["funding_goal"] == 20000.0
        assert body["funds_raised"] == 0

    def test_non_owner_cannot_edit(self, client, register, campaign):
        _, headers = register("rival", "startup")
        res = client.patch(f"/api/startups/{campaign['id']}", headers=headers, json={"pitch": "hijack"})
        assert res.status_code == 403

    def test_unknown_and_malformed_ids(self, client):
        assert client.get("/api/startups/64b000000000000000000000").status_code == 404
        assert client.get("/api/startups/nope").status_code == 400


# =============================================================================
# Transactions
# =============================================================================

class TestTransactions:

    def test_payment_lifecycle(self, client, founder, backer, campaign):
        _, owner_headers = founder
        _, investor_headers = backer
        startup_id = campaign["id"]

        res = invest(client, investor_headers, startup_id, 500)
        assert res.status_code == 201
        assert res.json()["status"] == "completed"
        assert raised(client, startup_id) == 500.0

        res = invest(client, investor_headers, startup_id, 300, "bank-transfer", "TXN123456")
        pending = res.json()
        assert pending["status"] == "pending"
        assert raised(client, startup_id) == 500.0

        res = client.patch(f"/api/transactions/{pending['id']}/verify", headers=owner_headers,
                           json={"status": "completed"})
        assert res.json()["status"] == "completed"
        assert raised(client, startup_id) == 800.0

        # duplicate approval does not count twice
        res = client.patch(f"/api/transactions/{pending['id']}/verify", headers=owner_headers,
                           json={"status": "completed"})
        assert res.status_code == 200
        assert raised(client, startup_id) == 800.0

        other = invest(client, investor_headers, startup_id, 200, "bank-transfer", "TXN777").json()
        res = client.patch(f"/api/transactions/{other['id']}/verify", headers=owner_headers,
                           json={"status": "failed"})
        assert res.json()["status"] == "failed"
        assert raised(client, startup_id) == 800.0

        mine = client.get("/api/transactions/investor/me", headers=investor_headers).json()
        theirs = client.get("/api/transactions/startup/me", headers=owner_headers).json()
        assert len(mine) == len(theirs) == 3
        assert {t["status"] for t in theirs} == {"completed", "failed"}

        funds = client.get(f"/api/startups/{startup_id}/funds").json()
        assert funds["completed_total"] == 800.0
        assert funds["consistent"] is True

    def test_investor_cannot_verify(self, client, backer, campaign):
        _, headers = backer
        tx = invest(client, headers, campaign["id"], 300, "bank-transfer", "TXN1").json()
        res = client.patch(f"/api/transactions/{tx['id']}/verify", headers=headers, json={"status": "completed"})
        assert res.status_code == 403

    def test_completed_cannot_be_rejected(self, client, founder, backer, campaign):
        tx = invest(client, backer[1], campaign["id"], 100).json()
        res = client.patch(f"/api/transactions/{tx['id']}/verify", headers=founder[1], json={"status": "failed"})
        assert res.status_code == 409

    def test_bad_decision(self, client, founder, backer, campaign):
        tx = invest(client, backer[1], campaign["id"], 100, "bank-transfer", "TXN1").json()
        res = client.patch(f"/api/transactions/{tx['id']}/verify", headers=founder[1], json={"status": "maybe"})
        assert res.status_code == 400

    @pytest.mark.parametrize("amount", [0, -10])
    def test_non_positive_amount(self, client, backer, campaign, amount):
        res = invest(client, backer[1], campaign["id"], amount)
        assert res.status_code == 422
        assert client.get("/api/transactions/investor/me", headers=backer[1]).json() == []

    @pytest.mark.parametrize("amount", [1e20, 1e30])
    def test_oversized_amount(self, client, backer, campaign, amount):
        res = invest(client, backer[1], campaign["id"], amount)
        assert res.status_code == 422
        assert raised(client, campaign["id"]) == 0

    def test_bank_transfer_without_reference(self, client, backer, campaign):
        res = invest(client, backer[1], campaign["id"], 100, "bank-transfer", None)
        assert res.status_code == 400

    def test_startup_cannot_invest(self, client, founder, campaign):
        res = invest(client, founder[1], campaign["id"], 100)
        assert res.status_code == 403

    def test_unauthenticated(self, client, campaign):
        res = client.post("/api/transactions", json={
            "startup_id": campaign["id"], "amount": 1, "method": "wallet-transfer",
        })
        assert res.status_code == 401

    def test_transaction_visibility(self, client, register, founder, backer, campaign):
        tx = invest(client, backer[1], campaign["id"], 100).json()
        _, stranger = register("stranger", "investor")

        assert client.get(f"/api/transactions/{tx['id']}", headers=backer[1]).status_code == 200
        assert client.get(f"/api/transactions/{tx['id']}", headers=founder[1]).status_code == 200
        assert client.get(f"/api/transactions/{tx['id']}", headers=stranger).status_code == 403


# =============================================================================
# Updates
# =============================================================================

class TestUpdates:

    def post_updates(self, client, headers):
        for title, visibility in (("Monthly", "all-investors"), ("Board memo", "major-investors")):
            res = client.post("/api/updates", headers=headers, json={
                "title": title, "content": "...", "visibility": visibility,
            })
            assert res.status_code == 201

    def test_visibility_by_contribution(self, client, register, founder, backer, campaign):
        _, whale = register("whale", "investor")
        _, waiting = register("waiting", "investor")
        invest(client, backer[1], campaign["id"], 500)
        invest(client, whale, campaign["id"], settings.MAJOR_INVESTOR_THRESHOLD)
        invest(client, waiting, campaign["id"], 50000, "bank-transfer", "TXN42")
        self.post_updates(client, founder[1])

        small = client.get("/api/updates/investor/me", headers=backer[1]).json()
        big = client.get("/api/updates/investor/me", headers=whale).json()
        none = client.get("/api/updates/investor/me", headers=waiting).json()

        assert [u["title"] for u in small] == ["Monthly"]
        assert sorted(u["title"] for u in big) == ["Board memo", "Monthly"]
        assert none == []

    def test_public_listing_hides_major_updates(self, client, founder, campaign):
        self.post_updates(client, founder[1])

        public = client.get(f"/api/updates/startup/{campaign['id']}").json()
        own = client.get(f"/api/updates/startup/{campaign['id']}", headers=founder[1]).json()

        assert [u["title"] for u in public] == ["Monthly"]
        assert len(own) == 2

    def test_investor_cannot_post(self, client, backer):
        res = client.post("/api/updates", headers=backer[1], json={"title": "t", "content": "c"})
        assert res.status_code == 403


# =============================================================================
# Uploads
# =============================================================================

class TestUploads:

    @pytest.fixture(autouse=True)
    def upload_dir(self, tmp_path, monkeypatch):
        monkeypatch.setattr(settings, "UPLOAD_DIR", tmp_path)
        return tmp_path

    def test_document_upload(self, client, founder, campaign, upload_dir):
        res = client.post(
            "/api/upload/document",
            headers=founder[1],
            data={"title": "Pitch deck"},
            files={"document": ("deck.pdf", b"%PDF-1.4 test", "application/pdf")},
        )
        assert res.status_code == 201, res.text
        doc = res.json()["document"]
        assert doc["name"] == "Pitch deck"
        assert doc["type"] == "pdf"
        assert doc["path"].startswith("/uploads/documents/")
        assert (upload_dir / "documents" / doc["path"].rsplit("/", 1)[1]).exists()

        listed = client.get(f"/api/startups/{campaign['id']}/documents").json()
        assert [d["id"] for d in listed] == [doc["id"]]

    def test_disallowed_extension(self, client, founder, campaign):
        res = client.post(
            "/api/upload/document",
            headers=founder[1],
            data={"title": "Script"},
            files={"document": ("run.exe", b"MZ", "application/octet-stream")},
        )
        assert res.status_code == 400

    def test_profile_upload_updates_startup_image(self, client, founder, campaign):
        res = client.post(
            "/api/upload/profile",
            headers=founder[1],
            files={"profile": ("me.png", b"\x89PNG", "image/png")},
        )
        assert res.status_code == 200
        path = res.json()["filePath"]
        assert res.json()["user"]["profile_image"] == path
        assert client.get(f"/api/startups/{campaign['id']}").json()["image"] == path

    def test_upi_qr_upload(self, client, backer):
        res = client.post(
            "/api/upload/upi",
            headers=backer[1],
            data={"upi_id": "backer@okbank"},
            files={"upi": ("qr.png", b"\x89PNG", "image/png")},
        )
        assert res.status_code == 200
        assert res.json()["user"]["upi_id"] == "backer@okbank"


# =============================================================================
# Admin
# =============================================================================

class TestAdmin:

    @pytest.fixture
    def admin_headers(self, client):
        res = client.post("/api/admin/bootstrap", json={
            "username": "root", "email": "root@example.com", "password": "secret123",
        })
        assert res.status_code == 201
        return {"Authorization": f"Bearer {res.json()['token']}"}

    def test_single_bootstrap(self, client, admin_headers):
        res = client.post("/api/admin/bootstrap", json={
            "username": "root2", "email": "root2@example.com", "password": "secret123",
        })
        assert res.status_code == 403

    def test_analytics_and_reconcile(self, client, admin_headers, backer, campaign):
        invest(client, backer[1], campaign["id"], 250)
        invest(client, backer[1], campaign["id"], 100, "bank-transfer", "TXN5")

        stats = client.get("/api/admin/analytics", headers=admin_headers).json()
        assert stats["transactions"] == 2
        assert stats["pending_transactions"] == 1
        assert stats["total_funds"] == 250.0

        report = client.post(f"/api/admin/startups/{campaign['id']}/reconcile", headers=admin_headers).json()
        assert report["consistent"] is True
        assert report["repaired"] == []

    def test_admin_only(self, client, backer, campaign):
        assert client.get("/api/admin/analytics", headers=backer[1]).status_code == 403

    def test_sync_wallets(self, client, db, admin_headers, founder, campaign):
        user, _ = founder
        address = "0x" + "b2" * 20
        db["user"].update_one({"username": user["username"]}, {"$set": {"wallet_address": address}})

        res = client.post("/api/admin/sync-wallets", headers=admin_headers)

        assert res.json()["synced"] == 1
        assert client.get(f"/api/startups/{campaign['id']}").json()["wallet_address"] == address


def test_indexes_created_at_startup(client, db, monkeypatch):
    created = []
    monkeypatch.setattr(main, "ensure_indexes", created.append)

    with client:
        assert client.get("/").status_code == 200

    assert len(created) == 1
    assert created[0] is db
