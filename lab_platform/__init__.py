"""Lab Platform: quota-aware lab container provisioning engine"""
__version__ = "1.0.0"
