from app.models.payment import Payment
from app.schemas.subscription import PaymentRecord
from app.services.payment_recorder import (
    create_payment,
    get_payment_by_external_id,
    list_payments_for_subscription,
    list_payments_for_user,
    update_payment_status,
)


def make_record(**fields):
    data = {
        "payment_id": "pay_1",
        "status": "authorized",
        "amount": "19900",
        "currency": "INR",
        "user_id": "u1",
        "subscription_id": "sub_1",
    }
    data.update(fields)
    return PaymentRecord(**data)


def test_create_payment(db_session):
    result = create_payment(db_session, make_record())

    assert result.success is True
    assert result.created is True
    payment = get_payment_by_external_id(db_session, "pay_1")
    assert payment.amount == "19900"
    assert payment.status == "authorized"


def test_redelivered_payment_updates_in_place(db_session):
    create_payment(db_session, make_record())

    result = create_payment(db_session, make_record(status="captured", metadata={"id": "pay_1"}))

    assert result.success is True
    assert result.created is False
    assert db_session.query(Payment).count() == 1
    payment = get_payment_by_external_id(db_session, "pay_1")
    assert payment.status == "captured"
    assert payment.metadata_ == {"id": "pay_1"}


def test_update_missing_payment(db_session):
    result = update_payment_status(db_session, "pay_missing", "failed")
    assert result.success is False
    assert result.message == "Payment not found"


def test_list_payments(db_session):
    create_payment(db_session, make_record(payment_id="pay_1"))
    create_payment(db_session, make_record(payment_id="pay_2"))
    create_payment(db_session, make_record(payment_id="pay_3", user_id="u2", subscription_id="sub_2"))

    user_payments = list_payments_for_user(db_session, "u1")
    assert [p.payment_id for p in user_payments] == ["pay_2", "pay_1"]
    assert len(list_payments_for_user(db_session, "u1", limit=1)) == 1
    assert [p.payment_id for p in list_payments_for_subscription(db_session, "sub_2")] == ["pay_3"]
