"""Models package."""

from .user import User
from .account import Account
from .rental import Rental
from .rental_match import RentalMatch
from .credit_ledger import CreditLedger
from .app_setting import AppSetting
from .activity_log import ActivityLog
