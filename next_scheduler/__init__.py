"""Next Scheduler API"""
