"""
Qlik Cloud source client.

Fetches all tenant users with their group assignments and keeps only users
that started a session within the configured audit window.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Any, List, Optional

from guest_sync.clients.base import ApiClientBase, ApiError, truncate
from guest_sync.models import SourceUser

logger = logging.getLogger(__name__)

SESSION_BEGIN_EVENT = 'com.qlik.user-session.begin'
USERS_LIMIT = 100
AUDIT_LIMIT = 100


def next_href(links: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return links.next.href, or None when there is no next page."""
    if not isinstance(links, dict):
        return None
    nxt = links.get('next')
    if not isinstance(nxt, dict):
        return None
    href = nxt.get('href')
    return href if href and href.strip() else None


def event_time_range(from_date: date, to_date: date) -> str:
    return f"{from_date.isoformat()}T00:00:00Z/{to_date.isoformat()}T23:59:59Z"


def parse_event_date(raw: Optional[str]) -> Optional[date]:
    """Parse an ISO-8601 event time into a UTC date."""
    if not raw or not raw.strip():
        return None
    value = raw.strip()
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).date()


class QlikUserClient(ApiClientBase):
    """Source-system client for the Qlik Cloud users and audits REST APIs."""

    def __init__(self, config: Dict[str, Any], today=None):
        """
        Initialize Qlik client.

        Args:
            config: The ``source`` configuration section
            today: Optional callable returning today's UTC date (for tests)
        """
        client_config = dict(config)
        client_config['auth'] = {'method': 'bearer', 'token': config.get('api_token')}
        super().__init__(client_config, name='qlik')

        self.users_endpoint = config.get('users_endpoint', '/api/v1/users')
        self.audit_endpoint = config.get('audit_endpoint', '/api/v1/audits')
        self.audit_days_back = int(config.get('audit_days_back', 400))
        self._today = today or (lambda: datetime.now(timezone.utc).date())

    def fetch_users(self) -> Optional[List[SourceUser]]:
        """
        Fetch all users, filtered by recent session activity.

        Returns:
            List of SourceUser, or None if any users page could not be fetched
        """
        users: List[SourceUser] = []
        next_url = self.users_endpoint
        params: Optional[Dict[str, Any]] = {'limit': USERS_LIMIT}

        while next_url:
            page = self._get_json(next_url, params, 'USERS')
            params = None
            if page is None:
                logger.warning("Qlik USERS fetch failed - returning None to signal failure")
                return None

            if isinstance(page.get('data'), list):
                batch = [SourceUser.from_dict(u) for u in page['data'] if isinstance(u, dict)]
                links = page.get('links')
            else:
                single = {k: v for k, v in page.items() if k != 'links'}
                batch = [SourceUser.from_dict(single)]
                links = None

            if batch:
                users.extend(batch)
                logger.debug(f"Fetched {len(batch)} users, total so far {len(users)}")
            else:
                logger.warning(f"No users in response from Qlik for URL {next_url}")

            next_url = next_href(links)

        try:
            users = self._filter_by_activity(users)
        except Exception as e:
            logger.warning(f"Failed to filter by audit activity. Returning unfiltered users. Cause={e}",
                           exc_info=True)

        logger.debug(f"Finished fetching users from Qlik. Total after filter: {len(users)}")
        return users

    def _filter_by_activity(self, users: List[SourceUser]) -> List[SourceUser]:
        to_date = self._today()
        from_date = to_date - timedelta(days=self.audit_days_back)
        last_login = self.fetch_last_login_by_user(from_date, to_date)

        before = len(users)
        kept = [u for u in users if u.id and u.id.strip() and u.id in last_login]
        logger.info(f"Users total={before} daysBack={self.audit_days_back} "
                    f"included={len(kept)} filteredOut={before - len(kept)}")
        return kept

    def fetch_last_login_by_user(self, from_date: date, to_date: date) -> Dict[str, date]:
        """
        Return the most recent session start date per user id within the window.

        A page failure stops paging; what was collected so far is returned.
        """
        if from_date > to_date:
            raise ValueError("from_date must be <= to_date")

        params: Optional[Dict[str, Any]] = {
            'eventType': SESSION_BEGIN_EVENT,
            'eventTime': event_time_range(from_date, to_date),
            'limit': AUDIT_LIMIT,
            'sort': '-eventTime'
        }
        next_url = self.audit_endpoint
        last_login: Dict[str, date] = {}
        pages = 0
        events = 0

        while next_url:
            pages += 1
            page = self._get_json(next_url, params, 'AUDIT')
            params = None
            if page is None:
                logger.warning(f"AUDIT bulk fetch failed at page {pages} (url={next_url}). "
                               f"Returning partial map size={len(last_login)}")
                break

            for event in page.get('data') or []:
                if not isinstance(event, dict):
                    continue
                user_id = event.get('userId')
                event_date = parse_event_date(event.get('eventTime'))
                if not user_id or event_date is None:
                    continue
                if event_date < from_date or event_date > to_date:
                    continue
                previous = last_login.get(user_id)
                if previous is None or event_date > previous:
                    last_login[user_id] = event_date
                events += 1

            next_url = next_href(page.get('links'))
            if pages % 10 == 0:
                logger.debug(f"AUDIT bulk progress: pages={pages} events={events} distinctUsers={len(last_login)}")

        logger.info(f"Qlik audit done pages={pages} events={events} users={len(last_login)} "
                    f"range={from_date}..{to_date}")
        return last_login

    def _get_json(self, url: str, params: Optional[Dict[str, Any]], tag: str) -> Optional[Dict[str, Any]]:
        """GET a page; log and return None on any failure."""
        try:
            response = self.request('GET', url, params=params)
        except ApiError as e:
            logger.warning(f"{tag} API failed for url={url} status={e.status_code} "
                           f"cause={e} body={truncate(e.body)}")
            return None
        if not isinstance(response, dict):
            logger.warning(f"{tag} API returned unexpected payload for url={url}")
            return None
        return response

    def check_access(self) -> Dict[str, Any]:
        """Fetch a single user to verify credentials (used by the health check)."""
        page = self._get_json(self.users_endpoint, {'limit': 1}, 'USERS')
        return {'reachable': page is not None}
