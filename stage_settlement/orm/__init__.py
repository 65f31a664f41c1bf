from .base import Base

from .project import Project, User, Group, GroupMember, ProjectViewer, GlobalAdmin, SystemSetting
from .stage import Stage, StageStatus
from .submission import Submission, Comment, CommentReaction
from .ranking import (
    RankingProposal, ProposalVote, ProposalStatus, VotingResult, compute_voting_result,
    TeacherSubmissionRanking, TeacherCommentRanking, CommentRankingProposal,
)
from .settlement import SettlementRecord, GroupSettlementDetail, CommentSettlementDetail, Transaction
from .operation_log import OperationLog
