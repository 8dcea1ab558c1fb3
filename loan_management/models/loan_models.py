from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class User(Base):
    __tablename__ = "Users"

    UserID = Column(Integer, primary_key=True)
    FirstName = Column(String(100), nullable=False)
    LastName = Column(String(100), nullable=False)
    Email = Column(String(255), nullable=False, unique=True)
    Phone = Column(String(50))
    Address = Column(String(500))
    DepartmentCode = Column(String(20))
    DepartmentName = Column(String(255))
    IsAdmin = Column(Boolean, default=False, nullable=False)
    PasswordHash = Column(String(256))
    PasswordSalt = Column(String(64))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Loans = relationship("Loan", back_populates="Borrower", cascade="all, delete-orphan")
    Reservations = relationship("Reservation", back_populates="User", cascade="all, delete-orphan")
    ReservedItems = relationship("Item", back_populates="ReservedBy")
    PasswordTokens = relationship("PasswordToken", back_populates="User", cascade="all, delete-orphan")


class Item(Base):
    __tablename__ = "Items"

    ItemID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    CustomID = Column(String(100), unique=True)
    Category = Column(String(20), nullable=False, default="EQUIPMENT")
    ServiceCategory = Column(String(50))
    ReservationStatus = Column(String(20), nullable=False, default="AVAILABLE")
    Available = Column(Boolean, nullable=False, default=True)
    ReservedByID = Column(Integer, ForeignKey("Users.UserID"))
    ReservedAt = Column(DateTime)
    Description = Column(String)
    Author = Column(String(255))
    Publisher = Column(String(255))
    YearPublished = Column(Integer)
    ISBN = Column(String(50))
    Brand = Column(String(255))
    Model = Column(String(255))
    SerialNumber = Column(String(255))
    CoverImageUrl = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    ReservedBy = relationship("User", back_populates="ReservedItems")
    Loans = relationship("Loan", back_populates="Item")
    Reservations = relationship("Reservation", back_populates="Item", cascade="all, delete-orphan")
    ReservationHistory = relationship("ReservationHistory", back_populates="Item", cascade="all, delete-orphan")


class Loan(Base):
    __tablename__ = "Loans"

    LoanID = Column(Integer, primary_key=True)
    ItemID = Column(Integer, ForeignKey("Items.ItemID"))
    BorrowerID = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    BorrowedAt = Column(DateTime, nullable=False)
    DueAt = Column(DateTime, nullable=False)
    ReturnedAt = Column(DateTime)
    Status = Column(String(20), nullable=False, default="ACTIVE")
    Notes = Column(String(2000))
    Contexts = Column(String(500))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Item = relationship("Item", back_populates="Loans")
    Borrower = relationship("User", back_populates="Loans")
    History = relationship(
        "LoanHistory",
        back_populates="Loan",
        cascade="all, delete-orphan",
        order_by="LoanHistory.HistoryID",
    )


class Reservation(Base):
    __tablename__ = "Reservations"

    ReservationID = Column(Integer, primary_key=True)
    ItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    StartDate = Column(DateTime, nullable=False)
    EndDate = Column(DateTime, nullable=False)
    Status = Column(String(20), nullable=False, default="CONFIRMED")
    CreatedDate = Column(DateTime, server_default=func.now())

    Item = relationship("Item", back_populates="Reservations")
    User = relationship("User", back_populates="Reservations")


class LoanHistory(Base):
    __tablename__ = "LoanHistory"

    HistoryID = Column(Integer, primary_key=True)
    LoanID = Column(Integer, ForeignKey("Loans.LoanID"), nullable=False)
    Status = Column(String(20), nullable=False)
    Date = Column(DateTime, nullable=False)
    UserID = Column(Integer)
    PerformedByID = Column(Integer)
    Comment = Column(String(2000))

    Loan = relationship("Loan", back_populates="History")


class ReservationHistory(Base):
    __tablename__ = "ReservationHistory"

    HistoryID = Column(Integer, primary_key=True)
    ItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False)
    ReservationID = Column(Integer)
    UserID = Column(Integer)
    PerformedByID = Column(Integer)
    Action = Column(String(30), nullable=False)
    Date = Column(DateTime, nullable=False)
    Comment = Column(String(2000))

    Item = relationship("Item", back_populates="ReservationHistory")


class UserActionHistory(Base):
    __tablename__ = "UserActionHistory"

    HistoryID = Column(Integer, primary_key=True)
    TargetUserID = Column(Integer, nullable=False)
    PerformerID = Column(Integer)
    Action = Column(String(40), nullable=False)
    Date = Column(DateTime, nullable=False)
    Comment = Column(String(2000))


class PasswordToken(Base):
    __tablename__ = "PasswordTokens"

    TokenID = Column(Integer, primary_key=True)
    TokenHash = Column(String(64), nullable=False, unique=True)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    ExpiresAt = Column(DateTime, nullable=False)
    CreatedAt = Column(DateTime, server_default=func.now())

    User = relationship("User", back_populates="PasswordTokens")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    UserID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
