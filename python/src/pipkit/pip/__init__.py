"""pip command building, output parsing and result records."""

from .models import *
