import os
import tempfile
import unittest
from datetime import date

from sqlalchemy.exc import IntegrityError

import crud, models, schemas
from auth import make_password_context
from config import Settings
from database import build_engine, build_session_factory, init_models
from errors import DuplicateIdentity, NotFound


class StoreTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        settings = Settings(database_url=f"sqlite+aiosqlite:///{os.path.join(self.tmpdir.name, 'store.db')}")
        self.engine = build_engine(settings)
        await init_models(self.engine)
        self.session_factory = build_session_factory(self.engine)
        self.db = self.session_factory()
        self.pwd_context = make_password_context(4)

    async def asyncTearDown(self):
        await self.db.close()
        await self.engine.dispose()
        self.tmpdir.cleanup()

    async def make_user(self, username="alice", email=None, password="s3cret"):
        user = schemas.UserCreate(username=username, email=email or f"{username}@example.com", password=password)
        return await crud.create_user(self.db, user, self.pwd_context)

    async def add(self, user_id, amount, category, day, notes=None):
        expense = schemas.ExpenseCreate(amount=amount, category=category, date=day, notes=notes)
        return await crud.create_expense(self.db, user_id, expense)


class TestCredentialStore(StoreTestCase):
    async def test_password_is_hashed(self):
        user = await self.make_user(password="s3cret")
        self.assertNotEqual(user.hashed_pass, "s3cret")
        self.assertTrue(self.pwd_context.verify("s3cret", user.hashed_pass))
        self.assertIsNotNone(user.created_at)

    async def test_duplicate_username(self):
        await self.make_user("alice", "one@example.com")
        with self.assertRaises(DuplicateIdentity):
            await self.make_user("alice", "two@example.com")

    async def test_duplicate_email(self):
        await self.make_user("alice", "same@example.com")
        with self.assertRaises(DuplicateIdentity):
            await self.make_user("bob", "same@example.com")

    async def test_session_usable_after_duplicate(self):
        await self.make_user("alice")
        with self.assertRaises(DuplicateIdentity):
            await self.make_user("alice")
        bob = await self.make_user("bob")
        self.assertIsNotNone(bob.id)

    async def test_not_null_violation_is_not_a_duplicate(self):
        self.db.add(models.User(username="carol", email="carol@example.com", hashed_pass=None))
        with self.assertRaises(IntegrityError) as ctx:
            await self.db.commit()
        await self.db.rollback()
        self.assertFalse(crud.is_unique_violation(ctx.exception))

    async def test_find_by_username(self):
        user = await self.make_user("alice")
        found = await crud.find_by_username(self.db, "alice")
        self.assertEqual(found.id, user.id)
        self.assertIsNone(await crud.find_by_username(self.db, "Alice"))

    async def test_verify_credentials(self):
        user = await self.make_user("alice", password="s3cret")
        verified = await crud.verify_credentials(self.db, "alice", "s3cret", self.pwd_context)
        self.assertEqual(verified.id, user.id)
        self.assertIsNone(await crud.verify_credentials(self.db, "alice", "wrong", self.pwd_context))
        self.assertIsNone(await crud.verify_credentials(self.db, "nobody", "s3cret", self.pwd_context))

    async def test_get_user(self):
        user = await self.make_user()
        self.assertEqual((await crud.get_user(self.db, user.id)).username, "alice")
        self.assertIsNone(await crud.get_user(self.db, user.id + 100))


class TestExpenseStore(StoreTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.alice = (await self.make_user("alice")).id
        self.bob = (await self.make_user("bob")).id

    async def test_create_expense(self):
        expense = await self.add(self.alice, 9.99, "Food", date(2024, 3, 5), "coffee")
        self.assertIsNotNone(expense.id)
        self.assertEqual(expense.user_id, self.alice)
        self.assertIsNotNone(expense.created_at)

    async def test_expense_for_missing_user(self):
        with self.assertRaises(NotFound):
            await self.add(self.alice + 100, 3, "Food", date(2024, 3, 5))
        self.assertEqual(await crud.list_expenses(self.db, self.alice + 100), [])

    async def test_null_notes_survive_round_trip(self):
        await self.add(self.alice, 3, "Food", date(2024, 3, 5))
        async with self.session_factory() as other:
            rows = await crud.list_expenses(other, self.alice)
        self.assertIsNone(rows[0].notes)

    async def test_list_orders_by_date_then_insertion(self):
        first = await self.add(self.alice, 1, "Food", date(2024, 3, 5))
        await self.add(self.alice, 2, "Food", date(2024, 3, 9))
        third = await self.add(self.alice, 3, "Food", date(2024, 3, 5))

        rows = await crud.list_expenses(self.db, self.alice)
        self.assertEqual([r.amount for r in rows], [2, 1, 3])
        self.assertLess(first.id, third.id)

    async def test_list_filters_by_month_and_year(self):
        await self.add(self.alice, 1, "Food", date(2024, 3, 1))
        await self.add(self.alice, 2, "Food", date(2024, 3, 31))
        await self.add(self.alice, 3, "Food", date(2024, 4, 1))
        await self.add(self.alice, 4, "Food", date(2023, 3, 15))
        await self.add(self.bob, 5, "Food", date(2024, 3, 15))

        rows = await crud.list_expenses(self.db, self.alice, month=3, year=2024)
        self.assertEqual([r.amount for r in rows], [2, 1])

    async def test_list_ignores_partial_filter(self):
        await self.add(self.alice, 1, "Food", date(2024, 3, 1))
        await self.add(self.alice, 2, "Food", date(2024, 4, 1))
        rows = await crud.list_expenses(self.db, self.alice, month=3)
        self.assertEqual(len(rows), 2)

    async def test_list_is_scoped_to_owner(self):
        await self.add(self.bob, 5, "Food", date(2024, 3, 15))
        self.assertEqual(await crud.list_expenses(self.db, self.alice), [])

    async def test_monthly_summary(self):
        await self.add(self.alice, 10, "Food", date(2024, 3, 1))
        await self.add(self.alice, 5, "Food", date(2024, 3, 2))
        await self.add(self.alice, 7, "Transport", date(2024, 3, 3))
        await self.add(self.alice, 40, "Food", date(2024, 2, 28))
        await self.add(self.bob, 50, "Food", date(2024, 3, 3))

        summary = await crud.monthly_summary(self.db, self.alice, 3, 2024)
        self.assertEqual(summary["by_category"], {"Food": 15, "Transport": 7})
        self.assertEqual(summary["total"], 22)

    async def test_monthly_summary_empty(self):
        summary = await crud.monthly_summary(self.db, self.alice, 3, 2024)
        self.assertEqual(summary, {"total": 0, "by_category": {}})

    async def test_update_replaces_fields(self):
        expense = await self.add(self.alice, 10, "Food", date(2024, 3, 1), "old")
        changes = schemas.ExpenseCreate(amount=20, category="Transport", date=date(2024, 3, 2))

        updated = await crud.update_expense(self.db, expense.id, self.alice, changes)
        self.assertEqual(updated.amount, 20)
        self.assertEqual(updated.category, "Transport")
        self.assertEqual(updated.date, date(2024, 3, 2))
        self.assertIsNone(updated.notes)

    async def test_update_foreign_expense(self):
        expense = await self.add(self.alice, 10, "Food", date(2024, 3, 1))
        changes = schemas.ExpenseCreate(amount=1, category="X", date=date(2024, 3, 1))

        self.assertIsNone(await crud.update_expense(self.db, expense.id, self.bob, changes))
        self.assertIsNone(await crud.update_expense(self.db, expense.id + 100, self.alice, changes))
        async with self.session_factory() as other:
            rows = await crud.list_expenses(other, self.alice)
        self.assertEqual((rows[0].amount, rows[0].category), (10, "Food"))

    async def test_delete_expense(self):
        expense = await self.add(self.alice, 10, "Food", date(2024, 3, 1))

        self.assertIsNone(await crud.delete_expense(self.db, expense.id, self.bob))
        deleted = await crud.delete_expense(self.db, expense.id, self.alice)
        self.assertEqual(deleted.id, expense.id)
        self.assertEqual(deleted.amount, 10)
        self.assertEqual(await crud.list_expenses(self.db, self.alice), [])
        self.assertIsNone(await crud.delete_expense(self.db, expense.id, self.alice))


class TestEngine(unittest.IsolatedAsyncioTestCase):
    async def test_sqlite_connection_settings(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            settings = Settings(
                database_url=f"sqlite+aiosqlite:///{os.path.join(tmpdir, 'engine.db')}",
                db_timeout_seconds=2.5,
            )
            engine = build_engine(settings)
            try:
                async with engine.connect() as conn:
                    busy_timeout = (await conn.exec_driver_sql("PRAGMA busy_timeout")).scalar()
                    foreign_keys = (await conn.exec_driver_sql("PRAGMA foreign_keys")).scalar()
            finally:
                await engine.dispose()
        self.assertEqual(busy_timeout, 2500)
        self.assertEqual(foreign_keys, 1)


if __name__ == "__main__":
    unittest.main()
