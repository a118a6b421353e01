# SPDX-License-Identifier: MPL-2.0
"""
Eight Sleep API Client Module

This module handles communication with the Eight Sleep cloud API for a
user's side of the bed. It provides methods to refresh OAuth2 tokens,
query the current heating state and control heating.

Unlike a long-lived device client, tokens are owned by the caller (they are
stored per user) and passed into every call.
"""

import requests
from dataclasses import dataclass
from typing import Dict, Any, Optional
import logging
from datetime import datetime, timedelta, timezone

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MIN_HEATING_LEVEL = -100
MAX_HEATING_LEVEL = 100


def clamp_level(level: int) -> int:
    """Limit a heating level to the range the device accepts."""
    return max(MIN_HEATING_LEVEL, min(MAX_HEATING_LEVEL, level))


class EightAPIError(Exception):
    """Custom exception for Eight Sleep API client errors."""
    pass


@dataclass
class EightToken:
    """
    OAuth2 credentials for one Eight Sleep user.

    Attributes:
        access_token (str): Bearer token for API calls
        refresh_token (str): Token used to obtain a new access token
        expires_at (datetime): When the access token expires (timezone-aware)
        user_id (str): Eight Sleep user identifier
    """
    access_token: str
    refresh_token: str
    expires_at: datetime
    user_id: str

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Return True once now is strictly past the expiry time."""
        if now is None:
            now = datetime.now(timezone.utc)
        return now > self.expires_at


@dataclass
class HeatingStatus:
    """
    Current heating state of a user's side of the bed.

    Attributes:
        is_heating (bool): Whether the side is switched on
        heating_level (int): Current target level (-100 to 100)
    """
    is_heating: bool
    heating_level: int

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> 'HeatingStatus':
        """Build from a /temperature API response."""
        state = data.get('currentState', {})
        state_type = state.get('type', 'off')
        return cls(
            is_heating=state_type != 'off',
            heating_level=int(data.get('currentLevel', 0)),
        )


class EightSleepClient:
    """
    Client for controlling an Eight Sleep side via the cloud API.

    Attributes:
        client_id (str): OAuth 2.0 client ID
        client_secret (str): OAuth 2.0 client secret
        timeout (int): Request timeout in seconds
        session (requests.Session): HTTP session for connection pooling
    """

    AUTH_URL = "https://auth-api.8slp.net/v1"
    APP_API_URL = "https://app-api.8slp.net/v1"

    def __init__(self, client_id: str, client_secret: str, timeout: int = 30):
        """
        Initialize the Eight Sleep API client.

        Args:
            client_id: OAuth 2.0 client ID
            client_secret: OAuth 2.0 client secret
            timeout: Request timeout in seconds (default: 30)
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        })

    def refresh_token(self, refresh_token: str, user_id: str) -> EightToken:
        """
        Obtain a fresh access token using a refresh token.

        Args:
            refresh_token: OAuth 2.0 refresh token
            user_id: Eight Sleep user ID the token belongs to

        Returns:
            New EightToken

        Raises:
            EightAPIError: If token refresh fails
        """
        payload = {
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        }

        try:
            logger.debug(f"Refreshing OAuth2 access token for user {user_id}")
            response = self.session.post(f"{self.AUTH_URL}/tokens", json=payload, timeout=self.timeout)
            response.raise_for_status()

            token_data = response.json()

            if 'access_token' not in token_data:
                raise KeyError("access_token not found in response")

            expires_in = token_data.get('expires_in', 3600)
            # Treat the token as expired 5 minutes early
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in - 300)

            token = EightToken(
                access_token=token_data['access_token'],
                refresh_token=token_data.get('refresh_token', refresh_token),
                expires_at=expires_at,
                user_id=token_data.get('userId', user_id),
            )
            logger.debug(f"Access token refreshed, expires at {expires_at}")
            return token

        except requests.exceptions.HTTPError as e:
            error_msg = f"OAuth2 token refresh failed: {e.response.status_code} - {e.response.text}"
            logger.error(error_msg)
            raise EightAPIError(error_msg)

        except (KeyError, ValueError) as e:
            error_msg = f"Invalid token response: {str(e)}"
            logger.error(error_msg)
            raise EightAPIError(error_msg)

        except requests.exceptions.RequestException as e:
            error_msg = f"Token refresh request failed: {str(e)}"
            logger.error(error_msg)
            raise EightAPIError(error_msg)

    def get_heating_status(self, token: EightToken) -> HeatingStatus:
        """
        Get the current heating state for the token's user.

        Args:
            token: Credentials of the user

        Returns:
            HeatingStatus with the current state

        Raises:
            EightAPIError: If the request fails
        """
        data = self._request('GET', token, self._temperature_url(token.user_id))
        try:
            status = HeatingStatus.from_response(data)
        except (TypeError, ValueError, AttributeError) as e:
            error_msg = f"Invalid heating status response: {str(e)}"
            logger.error(error_msg)
            raise EightAPIError(error_msg)

        logger.debug(f"Retrieved heating status: {status}")
        return status

    def turn_on_side(self, token: EightToken, user_id: str) -> Dict[str, Any]:
        """
        Switch heating on for a user's side.

        Args:
            token: Credentials of the user
            user_id: Eight Sleep user ID whose side to switch on

        Returns:
            API response dictionary

        Raises:
            EightAPIError: If the request fails
        """
        payload = {"currentState": {"type": "smart"}}
        return self._request('PUT', token, self._temperature_url(user_id), payload)

    def turn_off_side(self, token: EightToken, user_id: str) -> Dict[str, Any]:
        """
        Switch heating off for a user's side.

        Args:
            token: Credentials of the user
            user_id: Eight Sleep user ID whose side to switch off

        Returns:
            API response dictionary

        Raises:
            EightAPIError: If the request fails
        """
        payload = {"currentState": {"type": "off"}}
        return self._request('PUT', token, self._temperature_url(user_id), payload)

    def set_heating_level(self, token: EightToken, user_id: str, level: int) -> Dict[str, Any]:
        """
        Set the heating level for a user's side.

        Args:
            token: Credentials of the user
            user_id: Eight Sleep user ID
            level: Target level, clamped to -100..100

        Returns:
            API response dictionary

        Raises:
            EightAPIError: If the request fails
        """
        level = clamp_level(level)
        payload = {"currentLevel": level}
        return self._request('PUT', token, self._temperature_url(user_id), payload)

    def _temperature_url(self, user_id: str) -> str:
        return f"{self.APP_API_URL}/users/{user_id}/temperature"

    def _request(self, method: str, token: EightToken, url: str,
                 payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Perform an authenticated request.

        Args:
            method: HTTP method
            token: Credentials used for the Authorization header
            url: Full request URL
            payload: Optional JSON body

        Returns:
            Decoded JSON response (empty dict for an empty body)

        Raises:
            EightAPIError: If the request fails
        """
        headers = {'Authorization': f'Bearer {token.access_token}'}

        try:
            logger.debug(f"{method} {url} with payload {payload}")
            response = self.session.request(method, url, json=payload, headers=headers,
                                            timeout=self.timeout)
            response.raise_for_status()

            # Updates may return an empty body on success
            if response.text:
                result = response.json()
            else:
                result = {}

            if not isinstance(result, dict):
                raise ValueError(f"expected a JSON object, got {type(result).__name__}")
            return result

        except requests.exceptions.HTTPError as e:
            error_msg = f"HTTP error: {e.response.status_code} - {e.response.text}"
            logger.error(error_msg)
            raise EightAPIError(error_msg)

        except requests.exceptions.Timeout:
            error_msg = f"Request timed out after {self.timeout} seconds"
            logger.error(error_msg)
            raise EightAPIError(error_msg)

        except requests.exceptions.RequestException as e:
            error_msg = f"Request failed: {str(e)}"
            logger.error(error_msg)
            raise EightAPIError(error_msg)

        except ValueError as e:
            error_msg = f"Invalid JSON response: {str(e)}"
            logger.error(error_msg)
            raise EightAPIError(error_msg)

    def close(self) -> None:
        """Close the HTTP session."""
        self.session.close()
        logger.debug("Eight Sleep API client session closed")

    def __enter__(self) -> 'EightSleepClient':
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        self.close()
