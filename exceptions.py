class MinerException(Exception):
    """
    Root of every error the bot raises on its own.

    Subclasses only provide the message used when none is passed in.
    """
    default_message: str = "Unknown bot error"

    def __init__(self, *args: object):
        super().__init__(*(args or (self.default_message,)))


class ExitRequest(MinerException):
    """
    Unwinds whatever is running once the bot has been asked to quit.
    """
    default_message = "Exit requested"


class RequestException(MinerException):
    """
    A remote call did not produce a usable response.
    """
    default_message = "Request failed"


class WebsocketClosed(RequestException):
    """
    The PubSub connection went away.

    `received` tells whether the server initiated the closing.
    """
    default_message = "Websocket closed"

    def __init__(self, *args: object, received: bool = False):
        super().__init__(*args)
        self.received: bool = received


class LoginException(RequestException):
    default_message = "Login failed"


class GQLException(RequestException):
    default_message = "GQL request returned an error"


class StreamLoadFailed(MinerException):
    """
    Raised by a session driver when the stream did not settle within the load timeout.
    """
    default_message = "Stream failed to load"
