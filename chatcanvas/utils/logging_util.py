import logging

# Define a flag to check if the logger has been configured
logger_configured = False


def configure_logging(name="chatcanvas", level=logging.INFO):
    global logger_configured
    if not logger_configured:
        logging.basicConfig(level=level, format="%(asctime)s:%(levelname)s:%(module)s:%(message)s")
        logger_configured = True
    return logging.getLogger(name)
