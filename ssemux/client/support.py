from ssemux.shared.config import settings


def shared_broker_supported() -> bool:
    """
    Can several sessions share one broker in this environment?
    Deployments that cannot (one consumer per process, no shared loop) export
    SSEMUX_SHARED_BROKER=false and every session gets a private broker instead.
    """
    return settings.SHARED_BROKER
