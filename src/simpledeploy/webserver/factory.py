"""Select the webserver control adapter once at startup."""

import structlog

from simpledeploy.core.exceptions import ConfigurationError
from simpledeploy.webserver.base import NullWebserverControl, WebserverControl

logger = structlog.get_logger()


def create_webserver_control(kind: str) -> WebserverControl:
    kind = (kind or "none").strip().lower()
    if kind == "none":
        control: WebserverControl = NullWebserverControl()
    elif kind == "iis":
        from simpledeploy.webserver.iis import IISWebserverControl

        control = IISWebserverControl()
    else:
        raise ConfigurationError(f"Webserver '{kind}' is not supported", code="unsupported_webserver")
    logger.info("Webserver control selected", adapter=control.name)
    return control
