from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.logging import get_logger
from storefront.core.security import hash_password
from storefront.models.customer import Customer
from storefront.schemas.checkout import CheckoutCustomer

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def get_customer_by_email(session: AsyncSession, store_id: str, email: str) -> Customer | None:
    result = await session.execute(
        select(Customer).where(Customer.store_id == store_id, Customer.email == normalize_email(email))
    )
    return result.scalars().first()


def _apply_details(customer: Customer, details: CheckoutCustomer) -> None:
    if details.first_name:
        customer.first_name = details.first_name.strip()
    if details.last_name:
        customer.last_name = details.last_name.strip()
    if details.phone:
        customer.phone = details.phone
    customer.accepts_marketing = details.accepts_marketing
    # the password is only ever set once, by the first checkout that asks for an account
    if customer.password_hash is None and details.create_account and details.password:
        customer.password_hash = hash_password(details.password)


async def resolve_customer(session: AsyncSession, store_id: str, details: CheckoutCustomer) -> Customer:
    """Find the store's customer by email or create one, refreshing contact details."""
    email = normalize_email(str(details.email))
    customer = await get_customer_by_email(session, store_id, email)
    if customer is not None:
        _apply_details(customer, details)
        await session.flush()
        return customer

    customer = Customer(store_id=store_id, email=email)
    _apply_details(customer, details)
    try:
        async with session.begin_nested():
            session.add(customer)
    except IntegrityError:
        # a concurrent checkout created the same customer first
        customer = await get_customer_by_email(session, store_id, email)
        if customer is None:
            raise
        _apply_details(customer, details)
        await session.flush()
        return customer

    logger.info("checkout.customer.created", store_id=store_id, customer_id=customer.id)
    return customer
