from storefront.extensions import db
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime
from decimal import Decimal
from sqlalchemy import CheckConstraint, UniqueConstraint, text
import enum
import json


class UserRole(enum.Enum):
    CUSTOMER = 'CUSTOMER'
    ADMIN = 'ADMIN'


class OrderStatus(enum.Enum):
    PENDING = 'PENDING'
    COMPLETED = 'COMPLETED'


class PaymentStatus(enum.Enum):
    INIT = 'INIT'
    SUCCESS = 'SUCCESS'
    FAILED = 'FAILED'
    REFUNDED = 'REFUNDED'


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(
        db.Enum(UserRole),
        nullable=False,
        default=UserRole.CUSTOMER)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    last_login_at = db.Column(db.DateTime, nullable=True)

    # Relationships
    store_profile = db.relationship(
        'StoreProfile',
        backref='owner',
        uselist=False,
        cascade='all, delete-orphan')
    orders = db.relationship('Order', backref='user', lazy='dynamic')

    @property
    def is_admin(self):
        return self.role == UserRole.ADMIN

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def __repr__(self):
        return f'<User {self.email}>'


class StoreProfile(db.Model):
    __tablename__ = 'store_profiles'

    user_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'users.id',
            ondelete='CASCADE'),
        primary_key=True)
    store_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    def __repr__(self):
        return f'<StoreProfile {self.store_name}>'


class Product(db.Model):
    __tablename__ = 'products'

    id = db.Column(db.Integer, primary_key=True)
    # Owning store (an ADMIN user).
    store_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'users.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    name = db.Column(db.String(200), nullable=False, index=True)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    stock = db.Column(db.Integer, nullable=False, default=0)
    rating = db.Column(db.Numeric(2, 1), nullable=False, default=0)
    reviews_count = db.Column(db.Integer, nullable=False, default=0)
    category = db.Column(db.String(50), nullable=True, index=True)
    image_url = db.Column(db.String(500), nullable=True)
    # JSON array of feature strings
    features_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False,
        index=True)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)

    # Soft delete
    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    deleted_at = db.Column(db.DateTime, nullable=True)

    store = db.relationship('User', foreign_keys=[store_id])

    __table_args__ = (
        CheckConstraint('stock >= 0', name='check_stock_non_negative'),
        CheckConstraint('price >= 0', name='check_price_non_negative'),
        CheckConstraint(
            'rating >= 0 AND rating <= 5',
            name='check_rating_range'),
    )

    @property
    def features(self):
        if not self.features_json:
            return []
        try:
            value = json.loads(self.features_json)
        except ValueError:
            return []
        return value if isinstance(value, list) else []

    @features.setter
    def features(self, values):
        cleaned = [str(v).strip() for v in (values or []) if str(v).strip()]
        self.features_json = json.dumps(cleaned, ensure_ascii=False)

    def __repr__(self):
        return f'<Product {self.name}>'


class Order(db.Model):
    __tablename__ = 'orders'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'users.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    status = db.Column(
        db.Enum(OrderStatus),
        default=OrderStatus.PENDING,
        nullable=False)
    total = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)

    items = db.relationship(
        'OrderItem',
        backref='order',
        lazy='dynamic',
        cascade='all, delete-orphan',
        order_by='OrderItem.id')
    payment = db.relationship(
        'PaymentTransaction',
        backref='order',
        uselist=False,
        cascade='all, delete-orphan')
    shipping_snapshot = db.relationship(
        'ShippingSnapshot',
        backref='order',
        uselist=False,
        cascade='all, delete-orphan')

    # One cart per user.
    __table_args__ = (
        db.Index(
            'uq_orders_one_pending_per_user',
            'user_id',
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'")),
    )

    @property
    def is_pending(self):
        return self.status == OrderStatus.PENDING

    def compute_total(self):
        return sum(
            (item.line_total for item in self.items),
            Decimal('0.00'))

    def __repr__(self):
        return f'<Order {self.id} status={self.status}>'


class OrderItem(db.Model):
    __tablename__ = 'order_items'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'orders.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    product_id = db.Column(
        db.Integer,
        db.ForeignKey('products.id'),
        nullable=False,
        index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    # Unit price captured when the item entered the cart.
    price = db.Column(db.Numeric(10, 2), nullable=False)

    product = db.relationship('Product')

    __table_args__ = (
        CheckConstraint('quantity > 0', name='check_order_quantity_positive'),
        UniqueConstraint(
            'order_id',
            'product_id',
            name='uq_order_items_order_product'),
    )

    @property
    def line_total(self):
        return Decimal(self.price) * self.quantity

    def __repr__(self):
        return (
            f"<OrderItem {self.id} order={self.order_id} "
            f"product={self.product_id} qty={self.quantity}>"
        )


class ShippingSnapshot(db.Model):
    __tablename__ = 'shipping_snapshots'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'orders.id',
            ondelete='CASCADE'),
        unique=True,
        nullable=False)
    full_name = db.Column(db.String(100), nullable=False)
    address = db.Column(db.Text, nullable=False)
    city = db.Column(db.String(100), nullable=False)
    state = db.Column(db.String(100), nullable=False)
    zip_code = db.Column(db.String(20), nullable=False)
    phone = db.Column(db.String(30), nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    def to_dict(self):
        return {
            'full_name': self.full_name,
            'address': self.address,
            'city': self.city,
            'state': self.state,
            'zip_code': self.zip_code,
            'phone': self.phone,
        }

    def __repr__(self):
        return f'<ShippingSnapshot for order {self.order_id}>'


class PaymentTransaction(db.Model):
    __tablename__ = 'payment_transactions'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'orders.id',
            ondelete='CASCADE'),
        unique=True,
        nullable=False)
    session_token = db.Column(db.String(255), unique=True, nullable=False)
    # Cart total the payment session was created for.
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    status = db.Column(
        db.Enum(PaymentStatus),
        default=PaymentStatus.INIT,
        nullable=False)
    provider_reference = db.Column(db.String(100), nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)

    def __repr__(self):
        return f'<PaymentTransaction {self.id} status={self.status}>'


class ChatThread(db.Model):
    __tablename__ = 'chat_threads'

    id = db.Column(db.Integer, primary_key=True)
    buyer_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'users.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    seller_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'users.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)

    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    last_message_at = db.Column(db.DateTime, nullable=True)

    buyer_last_read_at = db.Column(db.DateTime, nullable=True)
    seller_last_read_at = db.Column(db.DateTime, nullable=True)

    buyer = db.relationship('User', foreign_keys=[buyer_id])
    seller = db.relationship('User', foreign_keys=[seller_id])
    messages = db.relationship(
        'ChatMessage',
        backref='thread',
        lazy='dynamic',
        cascade='all, delete-orphan')

    __table_args__ = (
        UniqueConstraint(
            'buyer_id',
            'seller_id',
            name='uq_chat_threads_buyer_seller'),
    )

    def has_party(self, user_id):
        return user_id in (self.buyer_id, self.seller_id)

    def __repr__(self):
        return (
            f'<ChatThread {self.id} buyer={self.buyer_id} '
            f'seller={self.seller_id}>'
        )


class ChatMessage(db.Model):
    __tablename__ = 'chat_messages'

    id = db.Column(db.Integer, primary_key=True)
    thread_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'chat_threads.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    sender_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'users.id',
            ondelete='SET NULL'),
        nullable=True,
        index=True)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False,
        index=True)

    sender = db.relationship('User', foreign_keys=[sender_id])

    def to_dict(self):
        return {
            'id': self.id,
            'thread_id': self.thread_id,
            'sender_id': self.sender_id,
            'content': self.content,
            'created_at': self.created_at.isoformat(),
        }

    def __repr__(self):
        return f'<ChatMessage {self.id} thread={self.thread_id}>'


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'users.id',
            ondelete='SET NULL'),
        nullable=True)
    actor_role = db.Column(db.String(20), nullable=False)
    # e.g., ORDER_COMPLETE, CART_ITEM_ADD
    action = db.Column(db.String(100), nullable=False)
    # ORDER, PRODUCT, CHAT_THREAD, etc.
    target_type = db.Column(db.String(50), nullable=True)
    target_id = db.Column(db.Integer, nullable=True)
    ip = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)
    # JSON format key field snapshot
    payload_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False,
        index=True)

    actor = db.relationship('User', foreign_keys=[actor_id])

    def set_payload(self, data):
        self.payload_json = json.dumps(data, ensure_ascii=False)

    def get_payload(self):
        if self.payload_json:
            return json.loads(self.payload_json)
        return {}

    def __repr__(self):
        return f'<AuditLog {self.id} action={self.action}>'
