from .targets import TargetResolver
from .template import TemplateService
from .remote import CommandRunner, HostCommandRunner
from .notification import NotificationService, ChannelProvider, AppriseChannelProvider
from .runner import RunnerService, JobExecutor, CancelResult
from .history import HistoryService
from .scheduler import SchedulerService, next_occurrence
