import logging

log = logging.getLogger("tests")
log.setLevel(logging.INFO)
