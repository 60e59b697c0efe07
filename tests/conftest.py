import os

os.environ.setdefault("TZ", "America/New_York")
os.environ["GOOGLE_CALENDAR_ENABLED"] = "false"
os.environ["NOTIFIER_BATCH_DELAY_SECONDS"] = "0"

from datetime import datetime, timedelta
from itertools import count

import pytest

from classbook.config import settings
from classbook.runtime import drain
from classbook.services.credit_service import CreditService
from classbook.services.email_service import EmailService
from classbook.services.schemas import Buyer, GuestInfo, OfferingIn
from classbook.services.session_service import SessionService
from classbook.storage.db import init_db, make_engine, make_sessionmaker
from classbook.storage.models import TimeSlot, User
from classbook.storage.states import SlotStatus
from classbook.utils.dates import now_local


class MailRecorder:
    """Stands in for the SMTP relay."""

    def __init__(self):
        self.sent = []
        self.accept = True
        self.calls = 0

    def send(self, to_email, subject, body):
        self.calls += 1
        if not self.accept:
            return False
        self.sent.append((to_email, subject, body))
        return True

    def to(self, email):
        return [m for m in self.sent if m[0] == email]


@pytest.fixture
async def engine(tmp_path):
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'classbook.sqlite3'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def sessionmaker(engine):
    return make_sessionmaker(engine)


@pytest.fixture
async def db(sessionmaker):
    async with sessionmaker() as session:
        yield session


@pytest.fixture(autouse=True)
async def background_tasks():
    yield
    await drain()


@pytest.fixture(autouse=True)
def mail(monkeypatch):
    recorder = MailRecorder()
    monkeypatch.setattr(EmailService, "send", staticmethod(recorder.send))
    monkeypatch.setattr(settings, "notifier_batch_delay_seconds", 0)
    return recorder


@pytest.fixture
async def instructor(db):
    user = User(email="coach@example.com", first_name="Maya", last_name="Stone", is_instructor=True)
    db.add(user)
    await db.commit()
    return user


_hours = count()


@pytest.fixture
def make_slot(db):
    async def _make(start_at: datetime | None = None, minutes: int = 60) -> TimeSlot:
        if start_at is None:
            # distinct future hours so slots never collide within a test
            n = next(_hours)
            base = (now_local() + timedelta(days=3)).replace(hour=6, minute=0, second=0)
            start_at = base + timedelta(days=n // 16, hours=n % 16)
        end_at = start_at + timedelta(minutes=minutes)
        slot = TimeSlot(
            date=start_at.date(),
            start_time=start_at.time().replace(second=0, microsecond=0),
            end_time=end_at.time().replace(second=0, microsecond=0),
            status=SlotStatus.available,
        )
        db.add(slot)
        await db.commit()
        return slot

    return _make


@pytest.fixture
def make_class(db, instructor, make_slot):
    async def _make(start_at: datetime | None = None, **offering) -> int:
        offering.setdefault("title", "Vinyasa Flow")
        slot = await make_slot(start_at)
        cls = await SessionService.create_session(db, instructor.id, slot.id, OfferingIn(**offering))
        return cls.id

    return _make


@pytest.fixture
def make_grant(db, instructor):
    async def _make(classes: int = 5, phone: str = "555-111-2222", email: str = "client@example.com",
                    checkout_id: str = "cs_pkg_1"):
        package = await CreditService.create_package(db, instructor.id, "Five Pack", classes, 9000)
        buyer = Buyer(first_name="Lena", last_name="Park", email=email, phone=phone)
        return await CreditService.purchase(db, package.id, buyer, checkout_id)

    return _make


def guest(n: int = 0, **kw) -> GuestInfo:
    data = {
        "first_name": "Guest",
        "last_name": f"No{n}",
        "phone": f"(555) 010-{n:04d}",
        "email": f"guest{n}@example.com",
    }
    data.update(kw)
    return GuestInfo(**data)
