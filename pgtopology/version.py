# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
__version__ = '0.1.0'
