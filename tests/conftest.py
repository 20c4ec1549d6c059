import io
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from vibecoder.core.clock import utcnow  # noqa: E402
from vibecoder.core.config import settings  # noqa: E402
from vibecoder.core.gateway import RazorpayGateway, get_gateway, hmac_sha256_hex  # noqa: E402
from vibecoder.core.security import make_access_token  # noqa: E402
from vibecoder.db.base import Base  # noqa: E402
from vibecoder.db.session import get_db, get_session_factory  # noqa: E402
from vibecoder.main import app  # noqa: E402
from vibecoder.models.project import Project, ProjectStatus  # noqa: E402
from vibecoder.models.transaction import Transaction, TransactionStatus  # noqa: E402
from vibecoder.models.user import User, UserRole  # noqa: E402
from vibecoder.services.payments import new_receipt_id, platform_fee  # noqa: E402

KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "whsec_test"


class FakeGateway(RazorpayGateway):
    """Answers the REST calls in memory; signature checks stay real."""

    def __init__(self):
        super().__init__(
            key_id="rzp_test_key",
            key_secret=KEY_SECRET,
            webhook_secret=WEBHOOK_SECRET,
            base_url="https://gateway.test/v1",
        )
        self.calls = []
        self.orders = {}
        self.payments = {}
        self.fail_with = None
        self._seq = 0

    def _request(self, method, path, payload=None, params=None):
        self.calls.append((method, path, payload))
        if self.fail_with is not None:
            raise self.fail_with

        parts = path.strip("/").split("/")
        self._seq += 1
        if method == "POST" and parts == ["orders"]:
            order = {
                "id": f"order_test{self._seq:04d}",
                "entity": "order",
                "amount": payload["amount"],
                "currency": payload["currency"],
                "receipt": payload["receipt"],
                "status": "created",
            }
            self.orders[order["id"]] = order
            return dict(order)
        if method == "GET" and parts == ["orders"]:
            return {"entity": "collection", "items": [dict(o) for o in self.orders.values()]}
        if method == "GET" and parts[0] == "orders" and len(parts) == 3:
            return {"entity": "collection", "items": self.payments.get(parts[1], [])}
        if method == "GET" and parts[0] == "orders":
            return dict(self.orders[parts[1]])
        if method == "POST" and parts[0] == "payments" and parts[-1] == "refund":
            return {
                "id": f"rfnd_test{self._seq:04d}",
                "payment_id": parts[1],
                "amount": payload["amount"],
                "status": "processed",
            }
        raise AssertionError(f"unexpected gateway call {method} {path}")


def sign_payment(order_id: str, payment_id: str) -> str:
    return hmac_sha256_hex(KEY_SECRET, f"{order_id}|{payment_id}".encode("utf-8"))


def sign_webhook(body: bytes) -> str:
    return hmac_sha256_hex(WEBHOOK_SECRET, body)


class FlakyFile(io.BytesIO):
    """Serves reads until `fail_at` bytes have been read, then the disk goes away."""

    def __init__(self, data: bytes, fail_at: int):
        super().__init__(data)
        self.fail_at = fail_at

    def read(self, size=-1):
        if self.tell() >= self.fail_at:
            raise OSError("disk went away")
        return super().read(size)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path))
    (tmp_path / "projects").mkdir()
    return tmp_path


@pytest.fixture
def client(session_factory, gateway, upload_dir):
    def _get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role: UserRole = UserRole.BUYER, email: str | None = None) -> User:
        counter["n"] += 1
        user = User(
            email=email or f"{role.value.lower()}{counter['n']}@vibecoder.dev",
            first_name=role.value.title(),
            last_name=str(counter["n"]),
            role=role.value,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def buyer(make_user):
    return make_user(UserRole.BUYER)


@pytest.fixture
def seller(make_user):
    return make_user(UserRole.SELLER)


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN)


@pytest.fixture
def make_project(db, upload_dir):
    def _make(
        seller: User,
        price: int = 499,
        status: ProjectStatus = ProjectStatus.APPROVED,
        content: bytes | None = b"print('hello vibe')\n" * 64,
        file_name: str = "starter-kit.zip",
    ) -> Project:
        project = Project(
            seller_id=seller.id,
            title=f"Project {file_name}",
            price=price,
            currency="INR",
            status=status.value,
        )
        db.add(project)
        db.flush()
        if content is not None:
            stored = f"{project.id}.zip"
            (upload_dir / "projects" / stored).write_bytes(content)
            project.main_file = stored
            project.original_file_name = file_name
            project.file_size = len(content)
        db.commit()
        db.refresh(project)
        return project

    return _make


@pytest.fixture
def make_transaction(db):
    def _make(
        project: Project,
        buyer: User,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        order_id: str | None = None,
        payment_id: str | None = "pay_seed",
        **extra,
    ) -> Transaction:
        fee = platform_fee(project.price)
        extra.setdefault(
            "completed_at", utcnow() if status == TransactionStatus.COMPLETED else None
        )
        tx = Transaction(
            project_id=project.id,
            buyer_id=buyer.id,
            seller_id=project.seller_id,
            amount=project.price,
            currency=project.currency,
            status=status.value,
            gateway="RAZORPAY",
            gateway_order_id=order_id or f"order_{new_receipt_id()}",
            gateway_payment_id=payment_id,
            receipt_id=new_receipt_id(),
            platform_fee=fee,
            seller_payout=project.price - fee,
            **extra,
        )
        db.add(tx)
        db.commit()
        db.refresh(tx)
        return tx

    return _make


def auth(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_access_token(user.id, user.role)}"}
