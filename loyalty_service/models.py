from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, func
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Order lifecycle: NEW -> PROCESSING -> PROCESSED | INVALID
ORDER_NEW = "NEW"
ORDER_PROCESSING = "PROCESSING"
ORDER_PROCESSED = "PROCESSED"
ORDER_INVALID = "INVALID"

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    login = Column(String(255), unique=True, nullable=False)
    password = Column(String(64), nullable=False)

class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    number = Column(String(64), unique=True, nullable=False)
    login = Column(String(255), ForeignKey("users.login"), index=True, nullable=False)
    status = Column(String(16), nullable=False, default=ORDER_NEW, index=True)
    accrual = Column(Numeric(18, 2), nullable=False, default=0)
    uploaded_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

class Balance(Base):
    __tablename__ = "balances"
    id = Column(Integer, primary_key=True, autoincrement=True)
    login = Column(String(255), ForeignKey("users.login"), unique=True, nullable=False)
    current = Column(Numeric(18, 2), nullable=False, default=0)
    withdrawn = Column(Numeric(18, 2), nullable=False, default=0)

class Withdrawal(Base):
    __tablename__ = "withdrawals"
    id = Column(Integer, primary_key=True, autoincrement=True)
    login = Column(String(255), ForeignKey("users.login"), index=True, nullable=False)
    order_number = Column(String(64), nullable=False)  # payment reference, not an orders row
    sum = Column(Numeric(18, 2), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
