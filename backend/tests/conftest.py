"""
Pytest fixtures for billsync backend tests.

Provides the app with an in-memory database, per-test cleanup, the service
graph, and manual timer/clock doubles so debounce and TTL behavior can be
driven deterministically.
"""

import pytest
from billsync import create_app
from billsync.extensions import db, get_services


class ManualTimer:
    """threading.Timer stand-in that only fires when told to."""

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.started and not self.cancelled and not self.fired:
            self.fired = True
            self.function()


class ManualTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function):
        timer = ManualTimer(interval, function)
        self.timers.append(timer)
        return timer

    @property
    def live(self):
        return [t for t in self.timers if t.started and not t.cancelled and not t.fired]

    def fire_all(self):
        for timer in list(self.live):
            timer.fire()


class ManualClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'CACHE_CLEANUP_INTERVAL_SECONDS': 0,
        'RETRY_BASE_DELAY_SECONDS': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        get_services().shutdown()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def timers():
    return ManualTimerFactory()


@pytest.fixture(scope='function')
def clock():
    return ManualClock()


@pytest.fixture(scope='function')
def db_session(app, timers):
    """Empty every table and reset the live sync state for each test."""
    with app.app_context():
        services = get_services()
        services.reset()
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        # Debounced recalculation only runs when a test fires the timers
        services.debouncer.timer_factory = timers
        services.debouncer.context_factory = None

        yield db.session

        services.reset()
        db.session.rollback()


@pytest.fixture(scope='function')
def services(db_session):
    return get_services()


@pytest.fixture(scope='function')
def bills(services):
    return services.bills


@pytest.fixture(scope='function')
def products(services):
    return services.products


@pytest.fixture(scope='function')
def make_bill(bills):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        data = {
            "bill_number": f"B{counter['n']:03d}",
            "vendor": "OldCo",
            "date": "2026-01-15T10:00:00Z",
        }
        data.update(overrides)
        return bills.create_bill(data)

    return _make


@pytest.fixture(scope='function')
def make_product(products):
    def _make(bill=None, **overrides):
        data = {
            "product_name": "Widget",
            "category": "Tools",
            "vendor": "OldCo",
            "mrp": 15,
            "total_quantity": 10,
            "total_amount": 100,
        }
        if bill is not None:
            data["bill_id"] = bill["id"]
        data.update(overrides)
        return products.create_product(data)

    return _make
