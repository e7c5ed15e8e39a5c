import dataclasses
import logging

import pytest

from coffee_monitor.config import Settings
from coffee_monitor.models import RawObservation
from coffee_monitor.store import CoffeeStore


@pytest.fixture
def logger():
    return logging.getLogger("coffee_monitor.tests")


@pytest.fixture
def store(tmp_path):
    with CoffeeStore(tmp_path / "coffee.db") as db:
        yield db


@pytest.fixture
def settings(tmp_path):
    return dataclasses.replace(
        Settings.defaults(),
        db_path=tmp_path / "coffee.db",
        log_path=tmp_path / "coffee.log",
        jitter_min_s=0.0,
        jitter_max_s=0.0,
    )


@pytest.fixture
def observe():
    def make(
        name,
        roastery="Kaffebrenneriet",
        available=True,
        price=169.0,
        organic=False,
        description="",
    ):
        slug = name.lower().replace(" ", "-")
        return RawObservation(
            name=name,
            url=f"https://example.com/products/{slug}",
            price=price,
            available=available,
            roastery_name=roastery,
            description=description,
            organic=organic,
        )

    return make
