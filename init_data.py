from storefront import create_app
from storefront.extensions import db
from storefront.models import (
    User,
    UserRole,
    StoreProfile,
    Product,
)

app = create_app()

with app.app_context():
    # Create store owner account (if not exists)
    owner_email = "store@admin.com"
    owner = User.query.filter_by(email=owner_email).first()
    if not owner:
        owner = User(email=owner_email, role=UserRole.ADMIN)
        owner.set_password("admin123")
        db.session.add(owner)
        db.session.flush()
        db.session.add(StoreProfile(
            user_id=owner.id,
            store_name="TechStore Pro",
            description="Gadgets and accessories",
        ))
        print(f"Created store account: {owner_email} / admin123")

    products_data = [
        {
            "name": "Wireless Bluetooth Headphones",
            "description": (
                "High-quality wireless headphones with noise cancellation"
            ),
            "price": 99.99,
            "stock": 50,
            "rating": 4.5,
            "reviews_count": 128,
            "category": "electronics",
            "features": ["Noise cancellation", "30h battery", "USB-C"],
        },
        {
            "name": "Smartphone Case",
            "description": "Protective case for latest smartphones",
            "price": 19.99,
            "stock": 100,
            "rating": 4.1,
            "reviews_count": 54,
            "category": "accessories",
            "features": ["Shockproof", "Slim fit"],
        },
        {
            "name": "USB-C Cable",
            "description": "Fast charging USB-C cable, 2m length",
            "price": 12.99,
            "stock": 200,
            "rating": 4.7,
            "reviews_count": 310,
            "category": "accessories",
            "features": ["2m length", "60W charging"],
        },
        {
            "name": "Running Shoes",
            "description": "Lightweight running shoes",
            "price": 79.99,
            "stock": 30,
            "rating": 4.3,
            "reviews_count": 76,
            "category": "sports",
            "features": ["Breathable mesh", "Cushioned sole"],
        },
    ]

    for p_data in products_data:
        existing = Product.query.filter_by(
            store_id=owner.id,
            name=p_data["name"],
        ).first()
        if existing:
            continue
        features = p_data.pop("features")
        product = Product(store_id=owner.id, **p_data)
        product.features = features
        db.session.add(product)
        print(f"Created product: {p_data['name']}")

    # Create customer account
    customer_email = "customer@example.com"
    if not User.query.filter_by(email=customer_email).first():
        customer = User(email=customer_email, role=UserRole.CUSTOMER)
        customer.set_password("customer123")
        db.session.add(customer)
        print(f"Created customer account: {customer_email} / customer123")

    db.session.commit()
    print("Initial data loaded")
