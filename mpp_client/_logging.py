# =============================================================================
# MPP Python Client -- Logging
# =============================================================================

import logging

logger = logging.getLogger("mpp_client")
logger.addHandler(logging.NullHandler())
