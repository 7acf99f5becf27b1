"""Gift match challenges: budget ledger allocated after successful pledges."""
