import os

import pytest


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    missing = not (os.getenv("MEGA_TEST_EMAIL") and os.getenv("MEGA_TEST_PASSWORD"))
    if not missing:
        return
    mark_expr = getattr(config.option, "markexpr", "")
    if "integration" in mark_expr:
        return
    skip = pytest.mark.skip(reason="MEGA_TEST_EMAIL / MEGA_TEST_PASSWORD not set")
    for item in items:
        if item.get_closest_marker("integration"):
            item.add_marker(skip)


@pytest.fixture(scope="session")
def mega_credentials() -> tuple[str, str]:
    email = os.getenv("MEGA_TEST_EMAIL")
    password = os.getenv("MEGA_TEST_PASSWORD")
    if not email or not password:
        pytest.fail("MEGA_TEST_EMAIL and MEGA_TEST_PASSWORD must be set to run integration tests.")
    return email, password
