"""Subject resolution: the client tax id and optional CNJ case number a journey runs against.

The default resolver only checks that the identifiers are well formed (check
digits included). Deployments that own a client registry can plug in a resolver
that also confirms the client exists.
"""

import re
from typing import Optional, Protocol

from src.core.journeys.errors import SubjectInvalidError
from src.core.journeys.models import SubjectRef

_NON_DIGITS = re.compile(r"\D")
_CNPJ_WEIGHTS = [5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2]


class SubjectResolver(Protocol):
    def resolve(self, subject: SubjectRef) -> SubjectRef: ...


def _digits(value: str) -> str:
    return _NON_DIGITS.sub("", value)


def is_valid_cpf(value: str) -> bool:
    digits = [int(char) for char in _digits(value)]
    if len(digits) != 11 or len(set(digits)) == 1:
        return False
    for size in (9, 10):
        total = sum(digit * weight for digit, weight in zip(digits[:size], range(size + 1, 1, -1)))
        check = (total * 10) % 11 % 10
        if check != digits[size]:
            return False
    return True


def is_valid_cnpj(value: str) -> bool:
    digits = [int(char) for char in _digits(value)]
    if len(digits) != 14 or len(set(digits)) == 1:
        return False
    for weights in (_CNPJ_WEIGHTS, [6] + _CNPJ_WEIGHTS):
        size = len(weights)
        remainder = sum(digit * weight for digit, weight in zip(digits[:size], weights)) % 11
        check = 0 if remainder < 2 else 11 - remainder
        if check != digits[size]:
            return False
    return True


def normalize_cnj(value: str) -> Optional[str]:
    """Return the canonical NNNNNNN-DD.AAAA.J.TR.OOOO form, or None when invalid."""
    digits = _digits(value)
    if len(digits) != 20:
        return None
    sequence, check, year, segment, court, origin = (
        digits[:7],
        digits[7:9],
        digits[9:13],
        digits[13],
        digits[14:16],
        digits[16:],
    )
    expected = 98 - int(f"{sequence}{year}{segment}{court}{origin}00") % 97
    if expected != int(check):
        return None
    return f"{sequence}-{check}.{year}.{segment}.{court}.{origin}"


class FormatSubjectResolver:
    def resolve(self, subject: SubjectRef) -> SubjectRef:
        tax_id = _digits(subject.client_tax_id)
        if not (is_valid_cpf(tax_id) or is_valid_cnpj(tax_id)):
            raise SubjectInvalidError(
                message="client_tax_id is neither a valid CPF nor a valid CNPJ.",
                details={"client_tax_id": subject.client_tax_id},
            )
        case_number = None
        if subject.case_number:
            case_number = normalize_cnj(subject.case_number)
            if case_number is None:
                raise SubjectInvalidError(
                    message="case_number is not a valid CNJ process number.",
                    details={"case_number": subject.case_number},
                )
        return SubjectRef(client_tax_id=tax_id, case_number=case_number)
