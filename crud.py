import logging
from typing import Optional

from passlib.context import CryptContext
from sqlalchemy import desc, extract, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import models, schemas
from auth import hash_password, verify_password
from errors import DuplicateIdentity, NotFound, StorageError

logger = logging.getLogger("expense_tracker.crud")

# sqlite3 extended result codes for UNIQUE and PRIMARY KEY violations
SQLITE_UNIQUE_CODES = {2067, 1555}
SQLITE_UNIQUE_NAMES = {"SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"}
POSTGRES_UNIQUE_VIOLATION = "23505"
MYSQL_DUPLICATE_ENTRY = 1062

SQLITE_FOREIGN_KEY_CODES = {787}
SQLITE_FOREIGN_KEY_NAMES = {"SQLITE_CONSTRAINT_FOREIGNKEY"}
POSTGRES_FOREIGN_KEY_VIOLATION = "23503"
MYSQL_NO_REFERENCED_ROW = 1452


def _driver_errors(exc: IntegrityError):
    """The DB-API error and anything it was raised from."""
    err = exc.orig
    seen = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__

def _matches(exc: IntegrityError, sqlite_codes, sqlite_names, pgcode, mysql_errno) -> bool:
    for err in _driver_errors(exc):
        if getattr(err, "sqlite_errorcode", None) in sqlite_codes \
                or getattr(err, "sqlite_errorname", None) in sqlite_names:
            return True
        if getattr(err, "pgcode", None) == pgcode:
            return True
        args = getattr(err, "args", ())
        if args and args[0] == mysql_errno:
            return True
    return False

def is_unique_violation(exc: IntegrityError) -> bool:
    """Inspect the driver error's structured code for a unique-constraint violation."""
    return _matches(exc, SQLITE_UNIQUE_CODES, SQLITE_UNIQUE_NAMES,
                    POSTGRES_UNIQUE_VIOLATION, MYSQL_DUPLICATE_ENTRY)

def is_foreign_key_violation(exc: IntegrityError) -> bool:
    return _matches(exc, SQLITE_FOREIGN_KEY_CODES, SQLITE_FOREIGN_KEY_NAMES,
                    POSTGRES_FOREIGN_KEY_VIOLATION, MYSQL_NO_REFERENCED_ROW)


# ---------------------- USER ----------------------
async def create_user(db: AsyncSession, user: schemas.UserCreate, pwd_context: CryptContext):
    hashed_pw = await hash_password(pwd_context, user.password)
    db_user = models.User(username=user.username, email=user.email, hashed_pass=hashed_pw)
    db.add(db_user)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        if is_unique_violation(exc):
            logger.info("Registration rejected, username or email taken: %s", user.username)
            raise DuplicateIdentity()
        raise StorageError(details=str(exc.orig)) from exc
    await db.refresh(db_user)
    logger.info("Registered user id=%s username=%s", db_user.id, db_user.username)
    return db_user

async def get_user(db: AsyncSession, user_id: int) -> Optional[models.User]:
    return await db.get(models.User, user_id)

async def find_by_username(db: AsyncSession, username: str) -> Optional[models.User]:
    result = await db.execute(select(models.User).filter(models.User.username == username))
    return result.scalars().first()

async def verify_credentials(db: AsyncSession, username: str, password: str, pwd_context: CryptContext):
    """Return the user only if ``username`` exists and ``password`` matches its hash."""
    user = await find_by_username(db, username)
    if user and await verify_password(pwd_context, password, user.hashed_pass):
        return user
    return None

# ---------------------- EXPENSE ----------------------
def _in_month(query, month: int, year: int):
    return query.filter(
        extract('month', models.Expense.date) == month,
        extract('year', models.Expense.date) == year,
    )

async def create_expense(db: AsyncSession, user_id: int, expense: schemas.ExpenseCreate):
    db_exp = models.Expense(**expense.model_dump(), user_id=user_id)
    db.add(db_exp)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        if is_foreign_key_violation(exc):
            # a still-valid token can outlive its user
            logger.warning("Expense rejected, user id=%s no longer exists", user_id)
            raise NotFound("The user account could not be found. Please log in again.")
        raise StorageError(details=str(exc.orig)) from exc
    await db.refresh(db_exp)
    logger.info("User %s added expense id=%s", user_id, db_exp.id)
    return db_exp

async def list_expenses(db: AsyncSession, user_id: int, month: int = None, year: int = None):
    """
    All of a user's expenses, newest date first.

    When both ``month`` and ``year`` are given only that calendar month is
    returned. Rows sharing a date keep insertion order.
    """
    query = select(models.Expense).filter(models.Expense.user_id == user_id)
    if month is not None and year is not None:
        query = _in_month(query, month, year)
    query = query.order_by(desc(models.Expense.date), models.Expense.id)
    result = await db.execute(query)
    return list(result.scalars().all())

async def monthly_summary(db: AsyncSession, user_id: int, month: int, year: int) -> dict:
    """Category totals for one month plus the grand total."""
    query = select(models.Expense.category, func.sum(models.Expense.amount))\
        .filter(models.Expense.user_id == user_id)
    query = _in_month(query, month, year)\
        .group_by(models.Expense.category)\
        .order_by(models.Expense.category)
    result = await db.execute(query)

    by_category = {category: round(total, 2) for category, total in result.all()}
    return {
        'total': round(sum(by_category.values()), 2),
        'by_category': by_category,
    }

async def _get_owned_expense(db: AsyncSession, expense_id: int, user_id: int):
    result = await db.execute(
        select(models.Expense).filter(
            models.Expense.id == expense_id,
            models.Expense.user_id == user_id
        )
    )
    return result.scalars().first()

async def update_expense(db: AsyncSession, expense_id: int, user_id: int, updated: schemas.ExpenseCreate):
    expense = await _get_owned_expense(db, expense_id, user_id)
    if not expense:
        return None
    for key, value in updated.model_dump().items():
        setattr(expense, key, value)
    await db.commit()
    await db.refresh(expense)
    logger.info("User %s updated expense id=%s", user_id, expense_id)
    return expense

async def delete_expense(db: AsyncSession, expense_id: int, user_id: int):
    expense = await _get_owned_expense(db, expense_id, user_id)
    if not expense:
        return None
    await db.delete(expense)
    await db.commit()
    logger.info("User %s deleted expense id=%s", user_id, expense_id)
    return expense
