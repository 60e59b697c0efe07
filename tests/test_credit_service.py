import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from classbook.services.credit_service import CreditService
from classbook.services.errors import InsufficientCredit, InvalidRequest, NotFound
from classbook.services.schemas import Buyer, Identity
from classbook.storage.models import CreditGrant, User
from classbook.utils.dates import now_local

PHONE = "555-111-2222"


@pytest.mark.asyncio
async def test_create_package_validates(db, instructor):
    with pytest.raises(InvalidRequest):
        await CreditService.create_package(db, instructor.id, "  ", 5, 9000)
    with pytest.raises(InvalidRequest):
        await CreditService.create_package(db, instructor.id, "Pack", 0, 9000)
    with pytest.raises(NotFound):
        await CreditService.create_package(db, 999, "Pack", 5, 9000)

    package = await CreditService.create_package(db, instructor.id, " Ten Pack ", 10, 15000)
    assert package.name == "Ten Pack"
    assert [p.id for p in await CreditService.list_packages(db, instructor.id)] == [package.id]

    await CreditService.set_package_active(db, package.id, instructor.id, False)
    assert await CreditService.list_packages(db, instructor.id) == []
    assert len(await CreditService.list_packages(db, instructor.id, active_only=False)) == 1


@pytest.mark.asyncio
async def test_purchase_is_idempotent_per_checkout(db, instructor, mail):
    package = await CreditService.create_package(db, instructor.id, "Five Pack", 5, 9000)
    buyer = Buyer(first_name="Lena", last_name="Park", email="Client@Example.com", phone=PHONE)

    first = await CreditService.purchase(db, package.id, buyer, "cs_1", "pi_1")
    again = await CreditService.purchase(db, package.id, buyer, "cs_1", "pi_1")

    assert first.id == again.id
    assert first.guest_email == "client@example.com"
    assert first.guest_phone == "5551112222"
    assert await CreditService.balance(db, instructor.id, Identity(phone=PHONE)) == 5


@pytest.mark.asyncio
async def test_purchase_links_existing_account_by_email(db, instructor):
    user = User(email="client@example.com", first_name="Lena", last_name="Park")
    db.add(user)
    await db.commit()
    package = await CreditService.create_package(db, instructor.id, "Five Pack", 5, 9000)

    grant = await CreditService.purchase(
        db, package.id, Buyer(first_name="Lena", last_name="Park", email="client@example.com"), "cs_2"
    )

    assert grant.user_id == user.id
    assert await CreditService.balance(db, instructor.id, Identity(user_id=user.id)) == 5


@pytest.mark.asyncio
async def test_five_credits_redeem_five_times(db, instructor, make_grant):
    await make_grant(classes=5)
    who = Identity(phone=PHONE)

    for _ in range(5):
        await CreditService.redeem(db, instructor.id, who)
        await db.commit()

    with pytest.raises(InsufficientCredit):
        await CreditService.redeem(db, instructor.id, who)
    assert await CreditService.balance(db, instructor.id, who) == 0


@pytest.mark.asyncio
async def test_concurrent_redeems_never_overdraw(sessionmaker, db, instructor, make_grant):
    await make_grant(classes=3)

    async def redeem():
        async with sessionmaker() as s:
            try:
                await CreditService.redeem(s, instructor.id, Identity(phone=PHONE))
            except InsufficientCredit:
                return False
            await s.commit()
            return True

    results = await asyncio.gather(*(redeem() for _ in range(7)))

    assert results.count(True) == 3
    assert await db.scalar(select(CreditGrant.classes_remaining)) == 0


@pytest.mark.asyncio
async def test_restore_only_once(db, instructor, make_grant):
    await make_grant(classes=2)
    who = Identity(phone=PHONE)
    handle = await CreditService.redeem(db, instructor.id, who)
    await db.commit()
    assert await CreditService.balance(db, instructor.id, who) == 1

    assert await CreditService.restore(db, handle) is True
    await db.commit()
    assert await CreditService.restore(db, handle) is False
    await db.commit()

    assert await CreditService.balance(db, instructor.id, who) == 2


@pytest.mark.asyncio
async def test_balance_is_the_union_of_identities(db, instructor, make_grant):
    user = User(email="lena@example.com", first_name="Lena", last_name="Park", phone="5551112222")
    db.add(user)
    await db.commit()

    # bought as a guest by phone, then again with the account
    await make_grant(classes=5, checkout_id="cs_guest", email="old@example.com")
    package = await CreditService.create_package(db, instructor.id, "Three Pack", 3, 6000)
    await CreditService.purchase(
        db, package.id,
        Buyer(first_name="Lena", last_name="Park", email="lena@example.com", user_id=user.id),
        "cs_account",
    )

    assert await CreditService.balance(db, instructor.id, Identity(user_id=user.id)) == 3
    assert await CreditService.balance(db, instructor.id, Identity(phone=PHONE)) == 5
    both = Identity(user_id=user.id, phone=PHONE)
    assert await CreditService.balance(db, instructor.id, both) == 8
    assert await CreditService.balance(db, instructor.id, Identity()) == 0


@pytest.mark.asyncio
async def test_credits_are_scoped_to_the_instructor(db, instructor, make_grant):
    other = User(email="other@example.com", first_name="Ari", last_name="Cole", is_instructor=True)
    db.add(other)
    await db.commit()
    await make_grant(classes=5)

    with pytest.raises(InsufficientCredit):
        await CreditService.redeem(db, other.id, Identity(phone=PHONE))


@pytest.mark.asyncio
async def test_credits_do_not_lapse_with_age(db, instructor, make_grant):
    grant = await make_grant(classes=3)
    grant.purchased_at = now_local() - timedelta(days=730)
    await db.commit()
    who = Identity(phone=PHONE)

    assert await CreditService.balance(db, instructor.id, who) == 3
    handle = await CreditService.redeem(db, instructor.id, who)
    await db.commit()

    assert handle.grant_id == grant.id
    assert await CreditService.balance(db, instructor.id, who) == 2
    assert not hasattr(CreditGrant, "expires_at")
