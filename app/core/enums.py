from enum import Enum


class ImportType(str, Enum):
    STUDENTS = "students"
    TEACHERS = "teachers"
    STAFF = "staff"


class IdentityRole(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    # Staff are provisioned as school admins
    ADMIN = "admin"


IMPORT_TYPE_ROLE = {
    ImportType.STUDENTS: IdentityRole.STUDENT,
    ImportType.TEACHERS: IdentityRole.TEACHER,
    ImportType.STAFF: IdentityRole.ADMIN,
}


class UploadStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RowStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class RowStep(str, Enum):
    """Named sub-steps of processing one row, in order."""

    VALIDATE = "validation"
    RECONCILE_IDENTITY = "identity write"
    PROVISION_CREDENTIAL = "credential write"
    WRITE_ROLE_RECORD = "role record write"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
