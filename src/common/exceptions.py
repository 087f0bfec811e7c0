class MCTError(Exception):
    """
    Base of the errors raised by this package. message is phrased for an end-user,
    details go to the log.
    """
    message: str

    def __init__(self, message: str = "", *args):
        super().__init__(message, *args)
        self.message = message
