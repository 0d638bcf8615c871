"""
Token authentication for API callers and ADT feeds.

Interface engines commonly send ``Authorization: Bearer <key>`` while
DRF clients send ``Token <key>``; both keywords resolve against the same
``rest_framework.authtoken`` keys.
"""
from __future__ import annotations

from rest_framework import authentication, exceptions


class TokenAuthentication(authentication.TokenAuthentication):
    keyword = 'Token'
    keywords = (b'token', b'bearer')

    def authenticate(self, request):
        auth = authentication.get_authorization_header(request).split()
        if not auth or auth[0].lower() not in self.keywords:
            return None
        if len(auth) != 2:
            raise exceptions.AuthenticationFailed('Invalid token header.')
        try:
            key = auth[1].decode()
        except UnicodeError:
            raise exceptions.AuthenticationFailed('Invalid token header. Token string contains invalid characters.')
        return self.authenticate_credentials(key)
