# SPDX-License-Identifier: MPL-2.0
"""
User profile storage.

SQLAlchemy models and a small store wrapping them. Each user has a row
with their Eight Sleep credentials and a temperature profile holding the
sleep window, default levels and optional custom stages.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from sleep_heating.eight_sleep import EightToken
from sleep_heating.stages import SleepLevels, SleepWindow, TemperatureStage, parse_time

logger = logging.getLogger(__name__)

Base = declarative_base()


class ProfileStoreError(Exception):
    """Raised when the profile database cannot be read or written."""
    pass


class ProfileNotFoundError(ProfileStoreError):
    """Raised when no temperature profile exists for a user."""
    pass


class User(Base):
    """An Eight Sleep account and its stored OAuth2 credentials."""
    __tablename__ = "users"

    email = Column(String(255), primary_key=True)
    eight_user_id = Column(String(64), nullable=False)
    eight_access_token = Column(Text, nullable=False)
    eight_refresh_token = Column(Text, nullable=False)
    eight_token_expires_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<User(email={self.email}, eight_user_id={self.eight_user_id})>"


class UserTemperatureProfile(Base):
    """A user's sleep window and temperature schedule."""
    __tablename__ = "user_temperature_profiles"

    email = Column(String(255), ForeignKey("users.email"), primary_key=True)
    bed_time = Column(String(5), nullable=False)
    wakeup_time = Column(String(5), nullable=False)
    initial_sleep_level = Column(Integer, nullable=False)
    mid_stage_sleep_level = Column(Integer, nullable=False)
    final_sleep_level = Column(Integer, nullable=False)
    timezone_tz = Column(String(64), nullable=False, default="UTC")
    custom_stages = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False,
                        default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return (
            f"<UserTemperatureProfile(email={self.email}, "
            f"window={self.bed_time}-{self.wakeup_time}, tz={self.timezone_tz})>"
        )


@dataclass
class UserProfile:
    """A user's schedule and credentials, detached from the database."""
    email: str
    bed_time: str
    wake_time: str
    initial_sleep_level: int
    mid_stage_sleep_level: int
    final_sleep_level: int
    timezone: str
    custom_stages: Optional[str]
    token: EightToken

    @property
    def window(self) -> SleepWindow:
        return SleepWindow(self.bed_time, self.wake_time)

    @property
    def levels(self) -> SleepLevels:
        return SleepLevels(self.initial_sleep_level, self.mid_stage_sleep_level,
                           self.final_sleep_level)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo; stored values are always UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_user_profile(profile: UserTemperatureProfile, user: User) -> UserProfile:
    return UserProfile(
        email=profile.email,
        bed_time=profile.bed_time,
        wake_time=profile.wakeup_time,
        initial_sleep_level=profile.initial_sleep_level,
        mid_stage_sleep_level=profile.mid_stage_sleep_level,
        final_sleep_level=profile.final_sleep_level,
        timezone=profile.timezone_tz or "UTC",
        custom_stages=profile.custom_stages,
        token=EightToken(
            access_token=user.eight_access_token,
            refresh_token=user.eight_refresh_token,
            expires_at=_as_utc(user.eight_token_expires_at),
            user_id=user.eight_user_id,
        ),
    )


class ProfileStore:
    """
    Database access for user profiles.

    Every method opens its own short-lived session, so records returned
    are plain UserProfile objects with no link to the database.
    """

    def __init__(self, database_url: str):
        """
        Args:
            database_url: SQLAlchemy database URL (e.g., 'sqlite:///profiles.db')

        Raises:
            ProfileStoreError: If the URL is malformed or names an unknown driver
        """
        self.database_url = database_url
        try:
            self.engine = create_engine(database_url, echo=False, pool_pre_ping=True)
        except SQLAlchemyError as e:
            raise ProfileStoreError(f"Invalid database URL: {e}")
        self._sessionmaker = sessionmaker(bind=self.engine)

    def session(self) -> Session:
        """Open a new session."""
        return self._sessionmaker()

    def create_tables(self) -> None:
        """Create any missing tables."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise ProfileStoreError(f"Failed to create tables: {e}")

    def get_all_profiles(self) -> List[UserProfile]:
        """
        Load every user that has a temperature profile.

        Returns:
            List of profiles with their credentials

        Raises:
            ProfileStoreError: If the database query fails
        """
        try:
            with self.session() as session:
                rows = (
                    session.query(UserTemperatureProfile, User)
                    .join(User, UserTemperatureProfile.email == User.email)
                    .order_by(UserTemperatureProfile.email)
                    .all()
                )
                return [_to_user_profile(profile, user) for profile, user in rows]
        except SQLAlchemyError as e:
            raise ProfileStoreError(f"Failed to fetch user profiles: {e}")

    def get_profile(self, email: str) -> Optional[UserProfile]:
        """
        Load a single user's profile.

        Returns:
            The profile, or None if the user has no profile

        Raises:
            ProfileStoreError: If the database query fails
        """
        try:
            with self.session() as session:
                row = (
                    session.query(UserTemperatureProfile, User)
                    .join(User, UserTemperatureProfile.email == User.email)
                    .filter(UserTemperatureProfile.email == email)
                    .first()
                )
                if row is None:
                    return None
                return _to_user_profile(*row)
        except SQLAlchemyError as e:
            raise ProfileStoreError(f"Failed to fetch profile for {email}: {e}")

    def update_token(self, email: str, token: EightToken) -> None:
        """
        Store refreshed credentials for a user.

        Raises:
            ProfileNotFoundError: If the user does not exist
            ProfileStoreError: If the update fails
        """
        try:
            with self.session() as session:
                user = session.get(User, email)
                if user is None:
                    raise ProfileNotFoundError(f"User not found: {email}")

                user.eight_access_token = token.access_token
                user.eight_refresh_token = token.refresh_token
                user.eight_token_expires_at = _as_utc(token.expires_at)
                session.commit()
                logger.debug(f"Stored refreshed token for {email}, expires at {token.expires_at}")
        except SQLAlchemyError as e:
            raise ProfileStoreError(f"Failed to update token for {email}: {e}")

    def save_stages(self, email: str, bed_time: str, wake_time: str,
                    stages: List[TemperatureStage]) -> None:
        """
        Replace a user's sleep window and custom stages.

        Args:
            email: User to update
            bed_time: Bed time in HH:MM format
            wake_time: Wake time in HH:MM format
            stages: Custom temperature stages, stored in the given order

        Raises:
            ValueError: If a field is missing or a time is malformed
            ProfileNotFoundError: If the user has no temperature profile
            ProfileStoreError: If the update fails
        """
        if not email or not bed_time or not wake_time or stages is None:
            raise ValueError("Missing required fields")

        parse_time(bed_time)
        parse_time(wake_time)
        for stage in stages:
            parse_time(stage.time)

        try:
            with self.session() as session:
                profile = session.get(UserTemperatureProfile, email)
                if profile is None:
                    raise ProfileNotFoundError(f"User profile not found: {email}")

                profile.bed_time = bed_time
                profile.wakeup_time = wake_time
                profile.custom_stages = json.dumps([stage.to_dict() for stage in stages])
                profile.updated_at = datetime.now(timezone.utc)
                session.commit()
                logger.info(f"Saved {len(stages)} temperature stage(s) for {email}")
        except SQLAlchemyError as e:
            raise ProfileStoreError(f"Failed to save stages for {email}: {e}")
