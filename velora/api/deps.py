"""Request dependencies"""

from fastapi import HTTPException, Request, status

from velora.services.container import RadarServices


def get_services(request: Request) -> RadarServices:
    """The RadarServices container built at startup"""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Radar services not initialized",
        )
    return services
