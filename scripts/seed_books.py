"""Seed the Postgres database with a demo shopper and a book catalog.

Idempotent: the user is inserted with ON CONFLICT DO NOTHING and books are
upserted by id, so re-running resets titles, prices and stock.

Usage:
    alembic upgrade head
    python scripts/seed_books.py

Reads DATABASE_URL from the environment (async driver suffixes are stripped).
"""
import os
import sys
from pathlib import Path

import psycopg2
from psycopg2.extras import execute_values

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bookstore.auth import get_password_hash  # noqa: E402

DATABASE_URL = os.environ.get(
    "DATABASE_URL",
    "postgresql://postgres:postgres@db:5432/bookstore_db",
).replace("+asyncpg", "")

DEMO_PASSWORD = os.environ.get("DEMO_PASSWORD", "password123")

BOOKS = [
    {"title": "The Pragmatic Programmer", "author": "David Thomas, Andrew Hunt", "price": 39.99, "stock": 12,
     "description": "Classic advice on the craft of software development, updated for the modern era."},
    {"title": "Clean Code", "author": "Robert C. Martin", "price": 34.50, "stock": 8,
     "description": "Principles, patterns and practices for writing readable, maintainable code."},
    {"title": "Designing Data-Intensive Applications", "author": "Martin Kleppmann", "price": 45.00, "stock": 5,
     "description": "The big ideas behind reliable, scalable and maintainable data systems."},
    {"title": "Fluent Python", "author": "Luciano Ramalho", "price": 49.90, "stock": 6,
     "description": "Clear, concise and effective programming with Python's best features."},
    {"title": "Refactoring", "author": "Martin Fowler", "price": 42.00, "stock": 3,
     "description": "Improving the design of existing code, one small step at a time."},
    {"title": "The Mythical Man-Month", "author": "Frederick P. Brooks Jr.", "price": 24.95, "stock": 2,
     "description": "Essays on software engineering and project management."},
    {"title": "Structure and Interpretation of Computer Programs", "author": "Harold Abelson, Gerald Jay Sussman",
     "price": 55.00, "stock": 1, "description": "The wizard book: abstraction, recursion and interpreters."},
    {"title": "Out of Print Sampler", "author": "Various", "price": 9.99, "stock": 0,
     "description": "Shown in the catalog but cannot be added to a cart."},
]


def seed_user(cur):
    execute_values(
        cur,
        "INSERT INTO users (email, password_hash, name, first_name, last_name, is_active) VALUES %s "
        "ON CONFLICT (email) DO NOTHING",
        [("reader@bookshop.io", get_password_hash(DEMO_PASSWORD), "Demo Reader", "Demo", "Reader", True)],
    )
    print("Seeded demo user reader@bookshop.io")


def seed_books(cur):
    for idx, book in enumerate(BOOKS, start=1):
        cur.execute(
            """
            INSERT INTO books (id, title, author, description, price, stock, is_active)
            VALUES (%s, %s, %s, %s, %s, %s, TRUE)
            ON CONFLICT (id) DO UPDATE SET title = EXCLUDED.title, author = EXCLUDED.author,
                description = EXCLUDED.description, price = EXCLUDED.price, stock = EXCLUDED.stock
            """,
            (idx, book["title"], book["author"], book["description"], book["price"], book["stock"]),
        )
    # keep the serial ahead of the explicit ids
    cur.execute("SELECT setval(pg_get_serial_sequence('books', 'id'), (SELECT MAX(id) FROM books))")
    print(f"Seeded {len(BOOKS)} books")


def main():
    print("Seeding", DATABASE_URL)
    try:
        conn = psycopg2.connect(DATABASE_URL)
    except psycopg2.OperationalError as e:
        print(f"Failed to connect to database: {e}")
        sys.exit(1)

    conn.autocommit = True
    cur = conn.cursor()
    try:
        seed_user(cur)
        seed_books(cur)
    finally:
        cur.close()
        conn.close()
    print("Seed complete")


if __name__ == "__main__":
    main()
