from jwtpizza.bootstrap import bootstrap_admin, main
from jwtpizza.service.runtime import get_runtime
from jwtpizza.storage.errors import StorageError
from jwtpizza.storage.models import Role


async def test_creates_admin_with_admin_role():
    runtime = get_runtime()

    result = await bootstrap_admin("常用名字", "a@jwt.com", "toomanysecrets", runtime=runtime)

    assert result["status"] == "created"
    user = runtime.store.get_user_by_email("a@jwt.com")
    assert user.has_role(Role.ADMIN)
    assert runtime.hasher.verify("toomanysecrets", runtime.store.get_password_hash(user.id))


async def test_second_run_is_a_noop():
    runtime = get_runtime()
    await bootstrap_admin("admin", "a@jwt.com", "toomanysecrets", runtime=runtime)

    result = await bootstrap_admin("admin", "a@jwt.com", "other", runtime=runtime)

    assert result["status"] == "already_admin"


async def test_existing_diner_is_reported():
    runtime = get_runtime()
    await runtime.auth.register("diner", "d@jwt.com", "a")

    result = await bootstrap_admin("admin", "d@jwt.com", "x", runtime=runtime)

    assert result["status"] == "exists_not_admin"


async def test_dry_run_writes_nothing():
    runtime = get_runtime()

    result = await bootstrap_admin("admin", "a@jwt.com", "x", dry_run=True, runtime=runtime)

    assert result["status"] == "dry_run"
    assert runtime.store.get_user_by_email("a@jwt.com") is None


def test_cli_requires_email(capsys, monkeypatch):
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)

    assert main(["--password", "x"]) == 1
    assert "--email" in capsys.readouterr().out


def test_cli_creates_admin(capsys):
    assert main(["--email", "cli@jwt.com", "--password", "toomanysecrets"]) == 0
    assert "Created admin user: cli@jwt.com" in capsys.readouterr().out


def test_cli_reports_store_failure(capsys, monkeypatch):
    def broken(email):
        raise StorageError("get_user_by_email failed")

    monkeypatch.setattr(get_runtime().store, "get_user_by_email", broken)

    assert main(["--email", "cli@jwt.com", "--password", "toomanysecrets"]) == 1
    assert "Error: unable to find user" in capsys.readouterr().out
