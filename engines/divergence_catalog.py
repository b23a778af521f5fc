"""Registry of every data-integrity check and its fix metadata."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class Severity(str, Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    WARNING = "warning"
    INFORMATIONAL = "informational"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @property
    def label(self) -> str:
        return self.value.capitalize()


_SEVERITY_ORDER = [
    Severity.CRITICAL,
    Severity.IMPORTANT,
    Severity.WARNING,
    Severity.INFORMATIONAL,
]


class DivergenceType(str, Enum):
    # critical
    DUPLICATE_STUDENTS = "alunos_duplicados"
    ORPHAN_STUDENTS = "alunos_orfaos"
    ORPHAN_RESULTS = "resultados_orfaos"
    SCHOOLS_WITHOUT_REGION = "escolas_sem_polo"
    CLASSES_WITHOUT_SCHOOL = "turmas_sem_escola"
    # important
    INCONSISTENT_AVERAGES = "medias_inconsistentes"
    WRONG_CORRECT_TOTALS = "total_acertos_errado"
    SCORES_OUT_OF_RANGE = "notas_fora_range"
    WRONG_LEARNING_LEVEL = "nivel_aprendizagem_errado"
    QUESTIONS_WITHOUT_KEY = "questoes_sem_gabarito"
    GRADE_NOT_CONFIGURED = "serie_nao_configurada"
    # warning
    INVALID_SCHOOL_YEAR = "ano_letivo_invalido"
    INCONSISTENT_ATTENDANCE = "presenca_inconsistente"
    NAME_CODE_MISMATCH = "nome_codigo_divergente"
    INACTIVE_SCHOOLS_WITH_DATA = "escolas_inativas_dados_ativos"
    STUDENT_CLASS_GRADE_MISMATCH = "serie_aluno_turma_divergente"
    FAILED_IMPORTS = "importacoes_erro_pendente"
    # informational
    STUDENTS_WITHOUT_RESULTS = "alunos_sem_resultados"
    SCHOOLS_WITHOUT_STUDENTS = "escolas_sem_alunos"
    REGIONS_WITHOUT_SCHOOLS = "polos_sem_escolas"
    UNUSED_QUESTIONS = "questoes_nao_utilizadas"
    EMPTY_CLASSES = "turmas_vazias"


@dataclass(frozen=True)
class CatalogEntry:
    type: DivergenceType
    severity: Severity
    title: str
    description: str
    icon: str
    fixable: bool
    auto_fixable: bool
    fix_action_label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["severity"] = self.severity.value
        return data


def _entry(
    type_: DivergenceType,
    severity: Severity,
    title: str,
    description: str,
    icon: str,
    *,
    fixable: bool = False,
    auto: bool = False,
    action: Optional[str] = None,
) -> CatalogEntry:
    return CatalogEntry(type_, severity, title, description, icon, fixable, auto, action)


_T = DivergenceType
_S = Severity

CATALOG: Dict[DivergenceType, CatalogEntry] = {
    entry.type: entry
    for entry in (
        _entry(_T.DUPLICATE_STUDENTS, _S.CRITICAL, "Duplicate Students",
               "Students registered more than once with the same code", "Users",
               fixable=True, action="Merge or deactivate duplicate records"),
        _entry(_T.ORPHAN_STUDENTS, _S.CRITICAL, "Orphan Students",
               "Students without a valid school or class", "UserX",
               fixable=True, action="Link a school/class or deactivate the student"),
        _entry(_T.ORPHAN_RESULTS, _S.CRITICAL, "Orphan Results",
               "Results pointing at students or schools that do not exist", "FileX",
               fixable=True, auto=True, action="Remove results without a reference"),
        _entry(_T.SCHOOLS_WITHOUT_REGION, _S.CRITICAL, "Schools without Region",
               "Schools without a region or linked to an invalid region", "Building",
               fixable=True, action="Link a region to the school"),
        _entry(_T.CLASSES_WITHOUT_SCHOOL, _S.CRITICAL, "Classes without School",
               "Classes without a school or linked to an invalid school", "Users",
               fixable=True, action="Link a school or deactivate the class"),

        _entry(_T.INCONSISTENT_AVERAGES, _S.IMPORTANT, "Inconsistent Averages",
               "Stored average differs from the average computed from the scores", "Calculator",
               fixable=True, auto=True, action="Recompute the student's average"),
        _entry(_T.WRONG_CORRECT_TOTALS, _S.IMPORTANT, "Wrong Correct-Answer Totals",
               "Correct-answer totals do not match the recorded responses", "Hash",
               fixable=True, auto=True, action="Recount correct answers"),
        _entry(_T.SCORES_OUT_OF_RANGE, _S.IMPORTANT, "Scores out of Range",
               "Scores lower than 0 or greater than 10", "AlertTriangle",
               fixable=True, action="Set the score to a valid value"),
        _entry(_T.WRONG_LEARNING_LEVEL, _S.IMPORTANT, "Wrong Learning Level",
               "Learning level does not match the student's average", "Award",
               fixable=True, auto=True, action="Reclassify the learning level"),
        _entry(_T.QUESTIONS_WITHOUT_KEY, _S.IMPORTANT, "Questions without Answer Key",
               "Questions without a defined answer key", "HelpCircle",
               fixable=True, action="Set the question's answer key"),
        _entry(_T.GRADE_NOT_CONFIGURED, _S.IMPORTANT, "Grade not Configured",
               "Students or results in a grade with no configuration on file", "Settings",
               fixable=True, action="Configure the grade"),

        _entry(_T.INVALID_SCHOOL_YEAR, _S.WARNING, "Invalid School Year",
               "Records whose school year is malformed or outside the expected range", "Calendar",
               fixable=True, action="Fix the school year"),
        _entry(_T.INCONSISTENT_ATTENDANCE, _S.WARNING, "Inconsistent Attendance",
               "Student marked absent but holding recorded answers", "UserCheck",
               fixable=True, auto=True, action="Fix the attendance flag"),
        _entry(_T.NAME_CODE_MISMATCH, _S.WARNING, "Name/Code Mismatch",
               "The same student code carries different names", "UserCog",
               fixable=True, action="Check and fix the student's name"),
        _entry(_T.INACTIVE_SCHOOLS_WITH_DATA, _S.WARNING, "Inactive Schools with Data",
               "Inactive schools holding students or results of the current year", "Building2",
               fixable=True, action="Reactivate the school"),
        _entry(_T.STUDENT_CLASS_GRADE_MISMATCH, _S.WARNING, "Student Grade differs from Class",
               "Student grade differs from the grade of the linked class", "GitBranch",
               fixable=True, action="Align the student's grade with the class"),
        _entry(_T.FAILED_IMPORTS, _S.WARNING, "Failed Imports",
               "Imports in error or stuck processing for too long", "Upload",
               fixable=True, auto=True, action="Cancel pending imports"),

        _entry(_T.STUDENTS_WITHOUT_RESULTS, _S.INFORMATIONAL, "Students without Results",
               "Registered students with no exam result", "UserMinus"),
        _entry(_T.SCHOOLS_WITHOUT_STUDENTS, _S.INFORMATIONAL, "Schools without Students",
               "Active schools with no registered student", "School"),
        _entry(_T.REGIONS_WITHOUT_SCHOOLS, _S.INFORMATIONAL, "Regions without Schools",
               "Active regions with no linked school", "MapPin"),
        _entry(_T.UNUSED_QUESTIONS, _S.INFORMATIONAL, "Unused Questions",
               "Registered questions never answered in an exam", "FileQuestion"),
        _entry(_T.EMPTY_CLASSES, _S.INFORMATIONAL, "Empty Classes",
               "Active classes with no linked student", "Users",
               fixable=True, auto=True, action="Deactivate empty classes"),
    )
}


def parse_type(value: Union[str, DivergenceType]) -> DivergenceType:
    """Return the ``DivergenceType`` for ``value`` or raise ``KeyError``."""
    if isinstance(value, DivergenceType):
        return value
    try:
        return DivergenceType(value)
    except ValueError:
        raise KeyError(f"Unknown divergence type: {value}") from None


def parse_severity(value: Union[str, Severity]) -> Severity:
    if isinstance(value, Severity):
        return value
    try:
        return Severity(value)
    except ValueError:
        raise KeyError(f"Unknown severity: {value}") from None


def get(type_: Union[str, DivergenceType]) -> CatalogEntry:
    return CATALOG[parse_type(type_)]


def by_severity(severity: Union[str, Severity]) -> List[CatalogEntry]:
    level = parse_severity(severity)
    return [entry for entry in CATALOG.values() if entry.severity is level]


def ordered() -> List[CatalogEntry]:
    """Every entry, most severe tier first, declaration order within a tier."""
    return sorted(CATALOG.values(), key=lambda entry: entry.severity.rank)
