from app import db, Customer, User


def test_create_customer(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["create-customer", "Acme Corp", "Billing@Acme.test"])
    assert "Customer created:" in result.output

    customer = db.session.execute(db.select(Customer)).scalar_one()
    assert customer.name == "Acme Corp"
    assert customer.email == "billing@acme.test"

    again = runner.invoke(args=["create-customer", "Acme Corp", "billing@acme.test"])
    assert f"Customer already exists: {customer.id}" in again.output


def test_create_admin_reads_env(app, monkeypatch):
    runner = app.test_cli_runner()
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
    assert "Set ADMIN_EMAIL" in runner.invoke(args=["create-admin"]).output

    monkeypatch.setenv("ADMIN_EMAIL", "root@example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "hunter22")
    assert "Admin created: root@example.com" in runner.invoke(args=["create-admin"]).output
    assert "Admin already exists." in runner.invoke(args=["create-admin"]).output

    admin = db.session.execute(db.select(User)).scalar_one()
    assert admin.check_password("hunter22")
