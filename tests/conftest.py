import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["CACHE_TYPE"] = "SimpleCache"

import pytest

from app import app as flask_app, db, Customer, Invoice, User, today, cache


@pytest.fixture()
def app():
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()
    cache.clear()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def customers(app):
    db.session.add_all([
        Customer(id="c1", name="Delba de Oliveira", email="delba@example.com"),
        Customer(id="c2", name="Lee Robinson", email="lee@example.com"),
    ])
    db.session.commit()
    return ["c1", "c2"]


@pytest.fixture()
def invoice(customers):
    inv = Invoice(id="inv1", customer_id="c1", amount=15795, status="pending", date=today())
    db.session.add(inv)
    db.session.commit()
    return inv.id


@pytest.fixture()
def user(app):
    u = User(email="admin@example.com", active=True)
    u.set_password("secret123")
    db.session.add(u)
    db.session.commit()
    return u


@pytest.fixture()
def logged_in(client, user):
    res = client.post("/login", data={"email": "admin@example.com", "password": "secret123"})
    assert res.status_code == 302
    return client
