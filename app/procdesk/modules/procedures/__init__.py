"""
Procedures module.

- Applicants submit procedures with encrypted attachments (version 1, Pending)
- Officers move them forward through Pending/InReview/Approved/Rejected/Archived
- Rejected procedures are corrected and resent as a new version
- Every status change and resend is appended to the record's history
"""
