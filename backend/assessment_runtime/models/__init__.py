from assessment_runtime.models.user import User
from assessment_runtime.models.problem import ProblemSet, Problem
from assessment_runtime.models.session import RuntimeSession
from assessment_runtime.models.submission_record import SubmissionRecord
