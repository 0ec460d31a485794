from tradeflow import create_app
from tradeflow.extensions import db
from tradeflow.models import (
    User,
    UserRole,
    SellerProfile,
    SellerBank,
    BankVerificationStatus,
    Item,
    ItemStatus,
)

app = create_app()

with app.app_context():
    # Create admin and demo buyer accounts (if not exists)
    for email, role, name in [
        ("admin@example.com", UserRole.ADMIN, "Platform Admin"),
        ("buyer@example.com", UserRole.BUYER, "Demo Buyer"),
    ]:
        if not User.query.filter_by(email=email).first():
            db.session.add(User(email=email, role=role, display_name=name))
            print(f"Created {role.value} account: {email}")

    sellers_data = [
        {
            "email": "seller1@example.com",
            "company_name": "Gulf Industrial Supply",
            "bank": {
                "bank_name": "Emirates NBD",
                "account_holder_name": "Gulf Industrial Supply LLC",
                "iban": "AE070331234567890123456",
            },
            "items": [
                {
                    "name": "Steel Pipe 2in",
                    "sku": "GIS-PIPE-002",
                    "description": "Galvanized steel pipe, 6m length",
                    "price": 185.00,
                },
                {
                    "name": "Safety Helmet",
                    "sku": "GIS-HLM-001",
                    "description": "EN397 certified hard hat",
                    "price": 42.50,
                },
            ],
        },
        {
            "email": "seller2@example.com",
            "company_name": "Desert Office Trading",
            "bank": {
                "bank_name": "Abu Dhabi Commercial Bank",
                "account_holder_name": "Desert Office Trading",
                "iban": "AE460090000000123456789",
            },
            "items": [
                {
                    "name": "A4 Paper Box",
                    "sku": "DOT-A4-500",
                    "description": "5 reams of 80gsm A4 paper",
                    "price": 95.00,
                },
                {
                    "name": "Ergonomic Chair",
                    "sku": "DOT-CHR-010",
                    "description": "Mesh office chair with lumbar support",
                    "price": 640.00,
                },
            ],
        },
    ]

    for seller_data in sellers_data:
        seller_user = User.query.filter_by(
            email=seller_data["email"]
        ).first()
        if not seller_user:
            seller_user = User(
                email=seller_data["email"],
                role=UserRole.SELLER,
                display_name=seller_data["company_name"],
            )
            db.session.add(seller_user)
            db.session.flush()

            # Seller profile carries its own id
            profile = SellerProfile(
                user_id=seller_user.id,
                company_name=seller_data["company_name"],
            )
            db.session.add(profile)

            bank = SellerBank(
                seller_id=seller_user.id,
                verification_status=BankVerificationStatus.APPROVED,
                **seller_data["bank"],
            )
            db.session.add(bank)
            print(
                "Created seller: %s - %s"
                % (seller_data["email"], seller_data["company_name"])
            )

            for item_data in seller_data["items"]:
                item = Item(
                    seller_id=seller_user.id,
                    status=ItemStatus.ACTIVE,
                    **item_data,
                )
                db.session.add(item)
                print(f"  Created item: {item_data['name']}")

    db.session.commit()
    print("Data initialization completed!")
