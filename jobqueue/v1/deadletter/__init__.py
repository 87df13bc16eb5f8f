"""Dead-letter records of jobs that exhausted their retries, and their triage."""
