#!/usr/bin/env python3
"""
Seed a demo company with one user per role and print a bearer token for each.
Run from project root: python scripts/seed_demo_data.py
"""
import secrets
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from servicequeue.auth.security import create_access_token
from servicequeue.config import settings
from servicequeue.db import Base, SessionLocal, engine
from servicequeue.models.models import Agent, Company, User, UserRole


DEMO_USERS = [
    ("Carla", "Customer", "customer@demo.local", UserRole.CUSTOMER, True),
    ("Cody", "Admin", "customer-admin@demo.local", UserRole.CUSTOMER_ADMIN, True),
    ("Alex", "Agent", "agent@demo.local", UserRole.AGENT, False),
    ("Morgan", "Manager", "manager@demo.local", UserRole.AGENT_MANAGER, True),
    ("Sam", "Super", "super@demo.local", UserRole.SUPER_ADMIN, False),
]


def seed():
    if settings.database_url.startswith("sqlite:///./"):
        os.makedirs("var", exist_ok=True)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        company = db.query(Company).filter(Company.company_code == "DEMO01").first()
        if company:
            print("Company 'DEMO01' already exists, reusing it")
        else:
            company = Company(
                company_name="Demo Insurance Agency",
                company_code="DEMO01",
                primary_contact="Carla Customer",
                email="contact@demo.local",
            )
            db.add(company)
            db.commit()
            db.refresh(company)

        for first, last, email, role, in_company in DEMO_USERS:
            user = db.query(User).filter(User.email == email).first()
            if not user:
                user = User(
                    first_name=first,
                    last_name=last,
                    email=email,
                    role=role,
                    company_id=company.id if in_company else None,
                    login_code=secrets.token_hex(4).upper(),
                )
                db.add(user)
                db.commit()
                db.refresh(user)
                if role.is_agent:
                    db.add(Agent(user_id=user.id, assigned_company_ids=[str(company.id)]))
                    db.commit()
            print(f"{role.value:15} {email:28} {user.id}")
            print(f"  token: {create_access_token(user)}")
    finally:
        db.close()


if __name__ == "__main__":
    seed()
