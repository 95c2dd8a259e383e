"""Pytest configuration and fixtures for service layer tests."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

import atelier.models  # noqa: F401
from atelier.models.base import Base
from atelier.utils.config import reset_config


@pytest.fixture(scope="function")
def test_db():
    """Provide a clean test database for each test function.

    This fixture:
    1. Creates an in-memory SQLite database shared across threads
    2. Creates all tables
    3. Provides the scoped session factory to the test
    4. Drops all tables after the test completes
    """
    reset_config()
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    Session = scoped_session(session_factory)

    # Monkey-patch the global session factory for tests
    import atelier.services.database as db_module

    original_get_session_factory = db_module.get_session_factory
    db_module.get_session_factory = lambda: Session

    yield Session

    Session.remove()
    Base.metadata.drop_all(engine)
    engine.dispose()
    db_module.get_session_factory = original_get_session_factory
    reset_config()


@pytest.fixture
def default_stages(test_db):
    """The seeded tailoring pipeline, keyed by stage name."""
    from atelier.services import stage_registry_service

    stage_registry_service.seed_default_stages()
    return {stage["name"]: stage for stage in stage_registry_service.list_stages()}


@pytest.fixture
def pipeline(test_db):
    """A small three-stage pipeline with one qualified worker per stage.

    Stages (no auto start, so tests drive every step):
        cut   - 1h, cutter, critical
        sew   - 2h, tailor, requires quality check, critical
        press - 0.5h, presser, not critical

    Product "Dishdasha" (labor 10.00) consumes 10 m linen at cut, 20 m
    silk lining at sew and 5 buttons at press per unit.
    """
    from atelier.services import catalog_service, stage_registry_service
    from atelier.services import worker_assignment_service

    cut = stage_registry_service.create_stage("cut", "Cutting", 1, "cutter", 1.0)
    sew = stage_registry_service.create_stage(
        "sew", "Sewing", 2, "tailor", 2.0, requires_quality_check=True
    )
    press = stage_registry_service.create_stage(
        "press", "Pressing", 3, "presser", 0.5, is_critical=False
    )

    linen = catalog_service.create_material("Linen", "m", on_hand_quantity=100, unit_cost="2.00")
    silk = catalog_service.create_material(
        "Silk lining", "m", on_hand_quantity=50, unit_cost="3.00"
    )
    buttons = catalog_service.create_material(
        "Buttons", "each", on_hand_quantity=40, unit_cost="0.25"
    )

    product = catalog_service.create_product(
        "Dishdasha",
        sku="DSH-001",
        product_type="dishdasha",
        labor_cost="10.00",
        bom=[
            {"material_id": linen["id"], "quantity_required": 10, "stage_id": cut["id"]},
            {"material_id": silk["id"], "quantity_required": 20, "stage_id": sew["id"]},
            {"material_id": buttons["id"], "quantity_required": 5, "stage_id": press["id"]},
        ],
    )

    workers = {}
    for stage, name, role, rate in (
        (cut, "Ali", "cutter", "5.00"),
        (sew, "Mona", "tailor", "6.00"),
        (press, "Sara", "presser", "4.00"),
    ):
        worker = worker_assignment_service.create_worker(name, role, rate)
        worker_assignment_service.add_stage_assignment(worker["id"], stage["id"])
        workers[stage["name"]] = worker["id"]

    return {
        "stages": {"cut": cut["id"], "sew": sew["id"], "press": press["id"]},
        "materials": {"linen": linen["id"], "silk": silk["id"], "buttons": buttons["id"]},
        "product_id": product["id"],
        "workers": workers,
    }


@pytest.fixture
def make_order(pipeline):
    """Factory: create an order for the pipeline product and drive it forward.

    until="created" | "accepted" | "reserved" | "production"
    """
    from atelier.services import order_service

    def _make(quantity=1, until="production", customer="Fatima Al-Sabah"):
        order = order_service.create_order(
            customer, [{"product_id": pipeline["product_id"], "quantity": quantity}]
        )
        if until == "created":
            return order["id"]
        order_service.approve_order(order["id"], "manager")
        if until == "accepted":
            return order["id"]
        order_service.reserve_order_materials(order["id"])
        if until == "reserved":
            return order["id"]
        order_service.start_production(order["id"], "manager")
        return order["id"]

    return _make

