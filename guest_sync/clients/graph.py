"""
Microsoft Graph directory client.

Implements the directory operations used by the sync engine and the cache
refresher: group lookup, paged membership listing, guest listing, guest
invitation and membership add/remove.
"""

import logging
from typing import Dict, Any, Iterator, Optional, Set

from guest_sync.cache import normalize_email
from guest_sync.clients.base import ApiClientBase, ApiError, truncate
from guest_sync.retry import ErrorKind

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_BASE_URL = 'https://graph.microsoft.com/v1.0'
DEFAULT_GRAPH_SCOPE = 'https://graph.microsoft.com/.default'
TOKEN_URL_TEMPLATE = 'https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token'
PAGE_SIZE = 999

ALREADY_MEMBER_MARKER = 'object references already exist'
ALREADY_EXISTS_MARKER = 'already exist'


def escape_odata(value: str) -> str:
    """Escape a string literal for an OData $filter expression."""
    return value.replace("'", "''")


class GraphDirectoryClient(ApiClientBase):
    """
    Directory client for Microsoft Entra ID through Microsoft Graph.

    Authenticates with the OAuth2 client credentials flow.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize Graph client.

        Args:
            config: The ``directory`` configuration section
        """
        tenant_id = config.get('tenant_id', '')
        client_config = dict(config)
        client_config.setdefault('base_url', DEFAULT_GRAPH_BASE_URL)
        client_config['auth'] = {
            'method': 'oauth2',
            'client_id': config.get('client_id'),
            'client_secret': config.get('client_secret'),
            'token_url': config.get('token_url') or TOKEN_URL_TEMPLATE.format(tenant_id=tenant_id),
            'scope': config.get('scope', DEFAULT_GRAPH_SCOPE)
        }
        super().__init__(client_config, name='graph')

        self.invite_redirect_url = config.get('invite_redirect_url', 'https://myapps.microsoft.com')
        self.directory_objects_url = client_config['base_url'].rstrip('/') + '/directoryObjects/'

    def _paged(self, path: str, params: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        """Yield every item of a collection, following @odata.nextLink."""
        response = self.request('GET', path, params=params)
        while True:
            for item in response.get('value') or []:
                if isinstance(item, dict):
                    yield item
            next_link = response.get('@odata.nextLink')
            if not next_link:
                return
            response = self.request('GET', next_link)

    def find_group_id(self, display_name: str) -> Optional[str]:
        """Resolve a group id by exact display name."""
        if not display_name or not display_name.strip():
            return None

        params = {
            '$filter': f"displayName eq '{escape_odata(display_name)}'",
            '$top': 1,
            '$select': 'id,displayName'
        }
        response = self.request('GET', '/groups', params=params)
        groups = response.get('value') or []
        if not groups:
            return None
        group_id = groups[0].get('id')
        return group_id or None

    def list_group_members(self, group_id: str) -> Set[str]:
        """Return the ids of all direct members of a group."""
        members = set()
        for member in self._paged(f'/groups/{group_id}/members', {'$top': PAGE_SIZE, '$select': 'id'}):
            member_id = member.get('id')
            if member_id:
                members.add(member_id)
        return members

    def list_guest_users(self) -> Iterator[Dict[str, Any]]:
        """Yield all guest users with id, mail, userPrincipalName and userType."""
        params = {
            '$filter': "userType eq 'Guest'",
            '$select': 'id,mail,userPrincipalName,userType',
            '$top': PAGE_SIZE
        }
        for user in self._paged('/users', params):
            if (user.get('userType') or '').lower() != 'guest':
                continue
            yield user

    def find_guest_by_email(self, email: str) -> Optional[str]:
        """Look up an existing guest user id by mail address."""
        if not email or not email.strip():
            return None

        params = {
            '$filter': f"userType eq 'Guest' and mail eq '{escape_odata(email)}'",
            '$top': 1,
            '$select': 'id'
        }
        response = self.request('GET', '/users', params=params)
        users = response.get('value') or []
        if not users:
            return None
        return users[0].get('id') or None

    def ensure_guest_user(self, email: str, display_name: Optional[str] = None) -> str:
        """
        Invite a guest user (no invitation mail is sent) or find the existing one.

        Returns:
            The directory user id

        Raises:
            ApiError: If the user id cannot be resolved
        """
        normalized = normalize_email(email)
        if normalized is None:
            raise ValueError("email is blank")

        logger.info(f"Inviting guest user {display_name} ({normalized}) via Graph (no email will be sent)")
        body = {
            'invitedUserEmailAddress': normalized,
            'invitedUserDisplayName': display_name or normalized,
            'inviteRedirectUrl': self.invite_redirect_url,
            'sendInvitationMessage': False
        }

        user_id = None
        try:
            response = self.request('POST', '/invitations', body=body)
            user_id = (response.get('invitedUser') or {}).get('id')
        except ApiError as e:
            if e.status_code == 400 and ALREADY_EXISTS_MARKER in e.body.lower():
                logger.info(f"Guest {normalized} already exists, resolving existing id")
            else:
                raise

        if not user_id:
            user_id = self.find_guest_by_email(normalized)

        if not user_id:
            raise ApiError(f"Could not resolve userId for invited guest: {normalized}",
                           kind=ErrorKind.CLIENT_ERROR)
        return user_id

    def add_member(self, group_id: str, user_id: str) -> None:
        """Add a directory object to a group. Existing membership counts as success."""
        body = {'@odata.id': self.directory_objects_url + user_id}
        try:
            self.request('POST', f'/groups/{group_id}/members/$ref', body=body)
        except ApiError as e:
            if e.status_code == 400 and ALREADY_MEMBER_MARKER in e.body.lower():
                logger.debug(f"userId={user_id} already member of groupId={group_id}")
                return
            logger.debug(f"Add member failed userId={user_id} groupId={group_id} body={truncate(e.body)}")
            raise

    def remove_member(self, group_id: str, user_id: str) -> None:
        """Remove a directory object from a group. A missing membership counts as success."""
        try:
            self.request('DELETE', f'/groups/{group_id}/members/{user_id}/$ref')
        except ApiError as e:
            if e.status_code == 404:
                logger.debug(f"userId={user_id} was not a member of groupId={group_id}")
                return
            raise

    def check_access(self) -> Dict[str, Any]:
        """Verify that a token can be obtained (used by the health check)."""
        return {'authenticated': self.authenticate()}
