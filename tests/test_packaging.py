import re
from importlib.metadata import requires


def test_directly_imported_libraries_are_declared():
    declared = {
        re.split(r"[<>=!~;\[ ]", req, maxsplit=1)[0].lower()
        for req in requires("faktury-dashboard") or []
        if "extra ==" not in req
    }
    for name in ("click", "pydantic-core", "pydantic", "flask-caching", "flask-sqlalchemy", "flask-login"):
        assert name in declared
