import logging

log = logging.getLogger(__name__)


class Notifier:
    ''' User-facing notices (toasts) and the new-message chime. The base class only logs. '''

    def success(self, text: str) -> None:
        log.info(text)

    def info(self, text: str) -> None:
        log.info(text)

    def error(self, text: str) -> None:
        log.warning(text)

    def chime(self) -> None:
        log.debug("chime")
