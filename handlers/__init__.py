"""
Device Command Handlers Package
"""
import logging

logger = logging.getLogger("handlers")

# Import base infrastructure FIRST
from .base import (
    CommandHandler,
    HANDLER_REGISTRY,
    register_handler,
    get_handler,
    get_handler_registry,
)

# Import all handler modules to trigger registration decorators
from .lighting import *
from .switches import *
from .hvac import *
from .blinds import *
from .generic import *
