"""Configuration module - re-exports all config values."""
from .paths import *
from .s3 import *
from .detection import *
from .redis import *
