from tradiedesk.models.user import BusinessSettings, User
from tradiedesk.models.client import Client
from tradiedesk.models.quote import Quote
from tradiedesk.models.job import Job
from tradiedesk.models.invoice import Invoice
from tradiedesk.models.notification import Notification
from tradiedesk.models.automation import Automation, AutomationLog
