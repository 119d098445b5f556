from scripts.seed_demo import seed_demo


def test_creates_demo_admin(store, verifier, demo_password):
    result = seed_demo(store, verifier, "demo_admin", demo_password)

    assert result["status"] == "created"
    user = store.get_user(result["user_id"])
    assert user.role == "admin"
    assert user.first_name == "Demo"
    assert verifier.verify("demo_admin", demo_password).id == user.id


def test_second_run_is_a_no_op(store, verifier, demo_password):
    seed_demo(store, verifier, "demo_admin", demo_password)

    result = seed_demo(store, verifier, "demo_admin", demo_password)

    assert result["status"] == "already_admin"
    assert len(store.list_users()) == 1


def test_promotes_existing_user(store, verifier, make_user, demo_password):
    existing = make_user("demo_admin")

    result = seed_demo(store, verifier, "demo_admin", demo_password)

    assert result == {"user_id": existing.id, "username": "demo_admin", "status": "updated"}
    assert store.get_user(existing.id).role == "admin"
    verifier.verify("demo_admin", demo_password)


def test_dry_run_changes_nothing(store, verifier, demo_password):
    result = seed_demo(store, verifier, "demo_admin", demo_password, dry_run=True)

    assert result["status"] == "dry_run"
    assert store.list_users() == []


def test_promotion_revokes_existing_sessions(store, verifier, make_user, demo_password):
    existing = make_user("demo_admin")
    store.create_session(existing.id)
    store.create_session(existing.id)
    other = make_user("bob")
    kept = store.create_session(other.id)

    seed_demo(store, verifier, "demo_admin", demo_password)

    assert list(store.sessions) == [kept.id]
