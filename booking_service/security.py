import json

from fastapi import Header, HTTPException, status

from .lifecycle import Actor, Role

# the gateway and auth-service speak lowercase role names
ROLE_ALIASES = {
    "user": Role.CUSTOMER,
    "customer": Role.CUSTOMER,
    "handyman": Role.SERVICE_PROVIDER,
    "provider": Role.SERVICE_PROVIDER,
    "service_provider": Role.SERVICE_PROVIDER,
    "admin": Role.ADMIN,
}


def parse_roles(raw: str | None) -> frozenset:
    try:
        token_roles = json.loads(raw) if raw else None
    except ValueError:
        token_roles = None

    if not isinstance(token_roles, list) or not token_roles:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Roles missing in token",
        )

    roles = {ROLE_ALIASES.get(str(r).strip().lower()) for r in token_roles}
    roles.discard(None)
    if not roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access forbidden for this role",
        )
    return frozenset(roles)


def get_actor(
    x_user_sub: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
) -> Actor:
    """
    Identity as forwarded by the gateway after it verified the bearer token
    (X-User-Sub carries the user id, X-User-Roles a JSON list of roles).
    """
    if not x_user_sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user identity",
        )
    try:
        user_id = int(x_user_sub)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity",
        )
    return Actor(user_id=user_id, roles=parse_roles(x_user_roles))
