from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status

from jobqueue.config.settings import AuthMode, settings


@dataclass
class Principal:
    """Represents the operator or producer calling the API."""

    user_id: str
    roles: list[str]

    @property
    def actor(self) -> str:
        """Name recorded on triage actions."""
        return self.user_id


async def get_principal(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
) -> Principal:
    """
    Dependency injection function to get the current principal.

    Behavior based on AUTH_MODE:
    - none: Returns the configured dev user with operator role
    - dev: Trusts the X-User-ID header set by an authenticating proxy
    """
    if settings.auth_mode == AuthMode.NONE:
        return Principal(user_id=settings.dev_user_id, roles=["operator"])
    elif settings.auth_mode == AuthMode.DEV:
        if not x_user_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="X-User-ID header is required in dev auth mode",
            )

        return Principal(user_id=x_user_id, roles=["operator"])
    else:
        raise ValueError(f"Unknown auth mode: {settings.auth_mode}")


# Convenience type alias for dependency injection
PrincipalDep = Depends(get_principal)
