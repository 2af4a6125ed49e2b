"""
Seed demo data — role labels, an admin, a collaborator, one client with a
contracted product, and a first-access link for that client.

Usage:
    python scripts/seed_demo.py              # Uses development DB
    python scripts/seed_demo.py --env production

This script is idempotent — safe to run multiple times.
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agencyops import create_app
from agencyops.models import db
from agencyops.models.auth import Role, User, UserRole
from agencyops.models.client import Client, ClientService, Product
from agencyops.services import activation_service
from agencyops.utils.crypto import hash_password

# Raw labels as the identity provider sends them; the classifier normalises them
ROLES = {
    "admin": "Administrator",
    "video_editor": "Editor de Vídeo",
    "designer": "Designer",
    "client": "Client",
}

PRODUCTS = [
    ("Reels edit", 350, 3),
    ("Static post", 120, 2),
    ("Carousel", 220, 4),
]


def seed_roles():
    created = 0
    for name, display_name in ROLES.items():
        if not Role.query.filter_by(name=name).first():
            db.session.add(Role(name=name, display_name=display_name))
            created += 1
    db.session.commit()
    print(f"  Roles: {created} created, {len(ROLES) - created} already existed")


def _user(email, full_name, role_name, password=None):
    user = User.query.filter_by(email=email).first()
    if user is None:
        user = User(email=email, full_name=full_name, status="invited")
        db.session.add(user)
        db.session.flush()
    if password:
        user.password_hash = hash_password(password)
        user.status = "active"
    role = Role.query.filter_by(name=role_name).first()
    if not UserRole.query.filter_by(user_id=user.id, role_id=role.id).first():
        db.session.add(UserRole(user_id=user.id, role_id=role.id))
    db.session.commit()
    return user


def seed_catalog_and_client():
    products = []
    for name, price, sla in PRODUCTS:
        product = Product.query.filter_by(name=name).first()
        if product is None:
            product = Product(name=name, base_price=price, default_sla_days=sla)
            db.session.add(product)
        products.append(product)
    db.session.flush()

    client = Client.query.filter_by(email="client@example.com").first()
    if client is None:
        client = Client(name="Demo Bakery", email="client@example.com")
        db.session.add(client)
        db.session.flush()
    for product in products:
        if not ClientService.query.filter_by(client_id=client.id, product_id=product.id).first():
            db.session.add(ClientService(
                client_id=client.id,
                product_id=product.id,
                negotiated_price=float(product.base_price) * 0.9,
                sla_days=product.default_sla_days,
            ))
    db.session.commit()
    print(f"  Client: {client.name} with {len(products)} contracted products")
    return client


def main():
    parser = argparse.ArgumentParser(description="Seed demo data")
    parser.add_argument("--env", default="development", choices=["development", "production"])
    args = parser.parse_args()

    app = create_app("production" if args.env == "prod" else args.env)
    with app.app_context():
        db.create_all()
        print("Seeding roles...")
        seed_roles()
        print("Seeding users...")
        admin = _user("admin@example.com", "Agency Admin", "admin",
                      password=os.getenv("SEED_ADMIN_PASSWORD", "change-me-now"))
        _user("editor@example.com", "Video Editor", "video_editor")
        print("Seeding catalog and client...")
        client = seed_catalog_and_client()
        if client.status == "pending":
            raw, record = activation_service.issue(client.id, "client", created_by=admin.id)
            base = app.config["APP_BASE_URL"].rstrip("/")
            print(f"  First-access link (expires {record.expires_at:%Y-%m-%d %H:%M}):")
            print(f"  {base}/first-access?token={raw}")
        print("Done.")


if __name__ == "__main__":
    main()
