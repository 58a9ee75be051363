import string

import shortuuid

_UPPER_ALPHANUMERIC = string.ascii_uppercase + string.digits


def generate_shortuuid() -> str:
    return shortuuid.uuid()


def generate_reference_suffix(length: int = 4) -> str:
    return shortuuid.ShortUUID(alphabet=_UPPER_ALPHANUMERIC).random(length=length)
