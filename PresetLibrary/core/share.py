"""System share surface for exported presets.

The repository hands an exported file to a share surface. The desktop surface opens
the file through Qt's desktop services and is only available while a GUI application
is running; headless processes get :class:`NullShareSurface` behaviour.
"""
import logging
import pathlib
from typing import Protocol

from PySide6 import QtCore, QtGui

SHARE_MIME_TYPE = 'text/plain'
SHARE_DIALOG_TITLE = 'Share Preset'


class ShareSurface(Protocol):
    """Anything that can hand a file to the user's sharing targets."""

    def is_available(self) -> bool:
        ...

    def share(self, path: pathlib.Path, mime_type: str = SHARE_MIME_TYPE,
              title: str = SHARE_DIALOG_TITLE) -> None:
        ...


class DesktopShareSurface:
    """Shares files by opening them with the desktop's default handler."""

    def is_available(self) -> bool:
        return isinstance(QtCore.QCoreApplication.instance(), QtGui.QGuiApplication)

    def share(self, path: pathlib.Path, mime_type: str = SHARE_MIME_TYPE,
              title: str = SHARE_DIALOG_TITLE) -> None:
        """
        Opens the file with the desktop's default handler.

        Raises:
            OSError: If the desktop refused to open the file.
        """
        url = QtCore.QUrl.fromLocalFile(str(path))
        logging.debug(f'{title}: opening {url.toString()} ({mime_type})')
        if not QtGui.QDesktopServices.openUrl(url):
            raise OSError(f'Desktop services could not open {path}')


class NullShareSurface:
    """A share surface that is never available."""

    def is_available(self) -> bool:
        return False

    def share(self, path: pathlib.Path, mime_type: str = SHARE_MIME_TYPE,
              title: str = SHARE_DIALOG_TITLE) -> None:
        raise OSError('Sharing is not available on this device')
