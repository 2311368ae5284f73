from abc import ABC, abstractmethod


class HRSystemClient(ABC):
    @abstractmethod
    def update_compliance_item(self, payload: dict) -> dict:
        """Push renewed license data for one employee compliance item.

        ``payload`` carries employee_number, compliance_item_id, expiration_date,
        license_number and notes. Raises TransientDispatchError /
        PermanentDispatchError on failure.
        """
        ...
